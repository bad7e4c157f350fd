"""
SQLite persistence for Kortex.

Provides the shared connection handling (thread-local connections for
concurrent readers, one lock for the single writer) and the session /
message store. Every sqlite3 error surfaces as StorageError.
"""

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import StorageError
from .types import Message, MessageRole, Session, utcnow


SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    context TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'model', 'tool')),
    content TEXT NOT NULL,
    tool_call_id TEXT,
    tool_result TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, created_at);

CREATE TABLE IF NOT EXISTS memory_fragments (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    content TEXT NOT NULL,
    embedding BLOB NOT NULL,
    dim INTEGER NOT NULL,
    tags TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
"""


def to_timestamp(value: datetime) -> str:
    return value.isoformat()


def from_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Corrupt timestamp {value!r}: {e}")


class SQLiteStore:
    """Base class owning the database file.

    Each thread gets its own connection; writes go through one lock so
    there is never more than one writer.
    """

    def __init__(self, db_path: Union[str, Path]):
        """Open (or create) the database and apply the schema.

        Args:
            db_path: Path to the SQLite file (not ":memory:", connections are per thread)

        Raises:
            StorageError: If the database cannot be opened or migrated
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._closed = False

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create database directory for {self.db_path}: {e}")

        with self._write_lock:
            conn = self._get_conn()
            try:
                conn.executescript(SCHEMA)
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to initialize database {self.db_path}: {e}")

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if self._closed:
            raise StorageError("Store has been closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = FULL")
            except sqlite3.Error as e:
                raise StorageError(f"Failed to connect to database {self.db_path}: {e}")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction, committed before the block returns."""
        with self._write_lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Database write failed: {e}")
            except BaseException:
                conn.rollback()
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database read failed: {e}")

    def close(self) -> None:
        """Close every connection opened by this store."""
        self._closed = True
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class SessionStore(SQLiteStore):
    """Sessions and their ordered messages. CRUD only."""

    def create_session(self, context: str = "") -> Session:
        """Create a new session."""
        session = Session(id=str(uuid.uuid4()), context=context, created_at=utcnow())
        with self._write() as conn:
            conn.execute(
                "INSERT INTO sessions (id, context, created_at) VALUES (?, ?, ?)",
                (session.id, session.context, to_timestamp(session.created_at)),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        """Retrieve a session, or None if it does not exist."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT id, context, created_at FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return Session(id=row["id"], context=row["context"], created_at=from_timestamp(row["created_at"]))

    def list_sessions(self, limit: int = 20) -> list[Session]:
        """Most recent sessions first."""
        if limit <= 0:
            return []
        with self._read() as conn:
            rows = conn.execute(
                "SELECT id, context, created_at FROM sessions ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            Session(id=row["id"], context=row["context"], created_at=from_timestamp(row["created_at"]))
            for row in rows
        ]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its messages.

        Returns:
            True if a session was deleted
        """
        with self._write() as conn:
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cursor.rowcount > 0

    def add_message(
        self,
        session_id: str,
        role: Union[MessageRole, str],
        content: str,
        tool_call_id: Optional[str] = None,
        tool_result: Optional[str] = None,
    ) -> Message:
        """Append a message to a session.

        Raises:
            ValueError: If the role is not user, model or tool
            StorageError: If the session does not exist or the write fails
        """
        role = MessageRole(role)
        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            created_at=utcnow(),
            tool_call_id=tool_call_id,
            tool_result=tool_result,
        )
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, session_id, role, content, tool_call_id, tool_result, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id, session_id, role.value, content,
                    tool_call_id, tool_result, to_timestamp(message.created_at),
                ),
            )
        return message

    def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        """Messages of a session in the order they were added."""
        sql = """
            SELECT id, session_id, role, content, tool_call_id, tool_result, created_at
            FROM messages WHERE session_id = ? ORDER BY rowid ASC
        """
        params: tuple = (session_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (session_id, max(limit, 0))
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            Message(
                id=row["id"],
                session_id=row["session_id"],
                role=MessageRole(row["role"]),
                content=row["content"],
                created_at=from_timestamp(row["created_at"]),
                tool_call_id=row["tool_call_id"],
                tool_result=row["tool_result"],
            )
            for row in rows
        ]
