"""
Text embedders used by the memory retrieval hook.
"""

import importlib.util
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .errors import EmbedderUnavailable


logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Maps text to a fixed-length vector."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed one text."""


class SentenceTransformerEmbedder(Embedder):
    """Embedder backed by a local sentence-transformers model.

    The model is loaded on first use; install the ``embeddings`` extra.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: str = "cpu"):
        self.model_name = model_name
        self.device = device
        self._model = None
        self._lock = threading.Lock()

    def _get_embedding_model(self):
        """Lazy load sentence transformer model."""
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as e:
                    raise EmbedderUnavailable(
                        "sentence-transformers is not installed; "
                        "install kortex[embeddings] to enable memory retrieval"
                    ) from e
                logger.info(f"Loading embedding model {self.model_name}")
                # Explicit device avoids lazy meta-device loading
                self._model = SentenceTransformer(self.model_name, device=self.device)
            return self._model

    def embed(self, text: str) -> list[float]:
        """Embed one text.

        Raises:
            ValueError: If text is empty
            EmbedderUnavailable: If the model is unavailable
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        model = self._get_embedding_model()
        vector = model.encode(text)
        return [float(x) for x in vector]


def create_embedder(model_name: Optional[str]) -> Optional[Embedder]:
    """Build the default embedder, or None when retrieval is disabled."""
    if not model_name:
        return None
    if importlib.util.find_spec("sentence_transformers") is None:
        logger.warning("sentence-transformers not installed. Memory retrieval disabled.")
        return None
    return SentenceTransformerEmbedder(model_name)
