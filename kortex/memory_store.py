"""
Long-term memory for Kortex.

Fragments are stored as float32 blobs in SQLite and ranked in Python by
cosine distance with numpy.
"""

import json
import logging
import uuid
from typing import Any, Optional, Sequence

import numpy as np

from .errors import DimensionMismatchError, StorageError
from .storage import SQLiteStore, from_timestamp, to_timestamp
from .types import MemoryFragment, utcnow


logger = logging.getLogger(__name__)


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    """1 - cosine similarity. A zero-norm vector has similarity 0."""
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 1.0
    return 1.0 - float(np.dot(a, b) / norm)


class MemoryStore(SQLiteStore):
    """Persistent store of MemoryFragments with nearest-neighbour search.

    Usage:
        store = MemoryStore(config.db_path)
        saved = store.save(MemoryFragment(content="...", embedding=vector))
        closest = store.search(query_vector, limit=3)
    """

    def save(self, fragment: MemoryFragment) -> MemoryFragment:
        """Persist a fragment.

        The write is committed before this returns.

        Returns:
            The stored fragment, with id and created_at assigned if absent

        Raises:
            ValueError: If the embedding is empty
            StorageError: If the write fails or tags are not JSON-serializable
        """
        if not fragment.embedding:
            raise ValueError("Fragment embedding cannot be empty")
        try:
            tags_json = json.dumps(fragment.tags or {}, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Fragment tags are not JSON-serializable: {e}")

        stored = MemoryFragment(
            content=fragment.content,
            embedding=fragment.embedding,
            tags=dict(fragment.tags or {}),
            id=fragment.id or str(uuid.uuid4()),
            created_at=fragment.created_at or utcnow(),
        )
        blob = np.asarray(stored.embedding, dtype=np.float32).tobytes()

        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO memory_fragments (id, content, embedding, dim, tags, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.id, stored.content, blob, len(stored.embedding),
                    tags_json, to_timestamp(stored.created_at),
                ),
            )
        logger.debug(f"Saved memory fragment {stored.id} (dim={len(stored.embedding)})")
        return stored

    def search(self, query: Sequence[float], limit: int = 3) -> list[MemoryFragment]:
        """Return the ``limit`` fragments closest to ``query``, closest first.

        Raises:
            ValueError: If the query vector is empty
            DimensionMismatchError: If a stored embedding has another dimension
            StorageError: If the store cannot be read
        """
        return [fragment for fragment, _ in self.search_with_distances(query, limit)]

    def search_with_distances(
        self, query: Sequence[float], limit: int = 3
    ) -> list[tuple[MemoryFragment, float]]:
        """Like search(), but pairs each fragment with its cosine distance."""
        if query is None or len(query) == 0:
            raise ValueError("Query embedding cannot be empty")
        if limit <= 0:
            return []

        query_vec = np.asarray(query, dtype=np.float32)
        with self._read() as conn:
            rows = conn.execute(
                "SELECT id, content, embedding, dim, tags, created_at "
                "FROM memory_fragments ORDER BY seq ASC"
            ).fetchall()

        scored = []
        for row in rows:
            embedding = self._decode_embedding(row)
            if embedding.shape[0] != query_vec.shape[0]:
                raise DimensionMismatchError(query_vec.shape[0], embedding.shape[0], row["id"])
            scored.append((row, embedding, cosine_distance(query_vec, embedding)))

        # sorted() is stable, so equal distances keep insertion order
        scored.sort(key=lambda item: item[2])
        return [
            (self._to_fragment(row, embedding), distance)
            for row, embedding, distance in scored[:limit]
        ]

    def get(self, fragment_id: str) -> Optional[MemoryFragment]:
        """Fetch one fragment by id."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT id, content, embedding, dim, tags, created_at "
                "FROM memory_fragments WHERE id = ?",
                (fragment_id,),
            ).fetchone()
        if row is None:
            return None
        return self._to_fragment(row, self._decode_embedding(row))

    def count(self) -> int:
        """Number of stored fragments."""
        with self._read() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM memory_fragments").fetchone()[0])

    def recent(self, limit: int = 10) -> list[MemoryFragment]:
        """Most recently saved fragments first."""
        if limit <= 0:
            return []
        with self._read() as conn:
            rows = conn.execute(
                "SELECT id, content, embedding, dim, tags, created_at "
                "FROM memory_fragments ORDER BY seq DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._to_fragment(row, self._decode_embedding(row)) for row in rows]

    @staticmethod
    def _decode_embedding(row) -> np.ndarray:
        blob = row["embedding"]
        if not isinstance(blob, (bytes, bytearray, memoryview)) or len(blob) % 4 != 0:
            raise StorageError(f"Corrupt embedding blob for fragment {row['id']}")
        embedding = np.frombuffer(bytes(blob), dtype=np.float32)
        if embedding.shape[0] != row["dim"]:
            raise StorageError(
                f"Corrupt embedding for fragment {row['id']}: "
                f"expected {row['dim']} values, found {embedding.shape[0]}"
            )
        return embedding

    @staticmethod
    def _decode_tags(row) -> dict[str, Any]:
        try:
            tags = json.loads(row["tags"] or "{}")
        except (TypeError, json.JSONDecodeError) as e:
            raise StorageError(f"Corrupt tags for fragment {row['id']}: {e}")
        if not isinstance(tags, dict):
            raise StorageError(f"Corrupt tags for fragment {row['id']}: not an object")
        return tags

    def _to_fragment(self, row, embedding: np.ndarray) -> MemoryFragment:
        return MemoryFragment(
            content=row["content"],
            embedding=tuple(float(x) for x in embedding),
            tags=self._decode_tags(row),
            id=row["id"],
            created_at=from_timestamp(row["created_at"]),
        )
