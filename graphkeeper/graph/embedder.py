"""
Graph Embedder: sentence-transformers vectors for entity names and facts.

Lazy-loads the model on first use. Names, facts and community names are
stored text, so E5 models get the "passage: " prefix. All vectors are
L2-normalized.
"""

import asyncio
import logging
import threading
from typing import List, Optional, Sequence

import numpy as np

from ..config import EmbeddingConfig
from ..exceptions import EmbeddingError, wrap_exception
from ..utils.async_helpers import l2_normalize

logger = logging.getLogger(__name__)


class GraphEmbedder:
    """Encodes short text phrases (names, facts, community names)."""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._model = None
        self._lock = threading.Lock()

    @property
    def uses_e5_prefixes(self) -> bool:
        return "e5" in self.config.model_name.lower()

    def _load_model(self):
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            model_name = self.config.model_name
            try:
                from sentence_transformers import SentenceTransformer

                logger.info(f"Loading {model_name}...")
                self._model = SentenceTransformer(model_name)
                dim = self._model.get_sentence_embedding_dimension()
                if dim != self.config.dimension:
                    raise EmbeddingError(
                        f"Expected {self.config.dimension}-dim embeddings, got {dim}-dim from {model_name}"
                    )
                logger.info(f"Loaded {model_name} ({dim}-dim)")
            except EmbeddingError:
                self._model = None
                raise
            except Exception as e:
                raise wrap_exception(e, EmbeddingError, f"Failed to load {model_name}: {e}") from e

    def encode_passages(self, texts: Sequence[str]) -> np.ndarray:
        """Encode texts for storage. Returns a (len(texts), dim) array."""
        if not texts:
            return np.zeros((0, self.config.dimension), dtype=np.float32)
        self._load_model()
        prefix = "passage: " if self.uses_e5_prefixes else ""
        try:
            vectors = self._model.encode(
                [f"{prefix}{t}" for t in texts],
                batch_size=self.config.batch_size,
                normalize_embeddings=True,
            )
        except Exception as e:
            raise wrap_exception(e, EmbeddingError, f"Failed to encode {len(texts)} passages: {e}") from e
        return np.asarray(vectors, dtype=np.float32)

    async def embed(self, text: str) -> np.ndarray:
        """Embed one stored text off the event loop."""
        vectors = await asyncio.to_thread(self.encode_passages, [text])
        return l2_normalize(vectors[0])

    async def embed_many(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed several stored texts in one model call."""
        if not texts:
            return []
        vectors = await asyncio.to_thread(self.encode_passages, list(texts))
        return [l2_normalize(v) for v in vectors]
