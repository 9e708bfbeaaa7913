"""Text embedding using SentenceTransformers.

Heavy imports (sentence_transformers) are deferred to avoid crashing
the application at import time if the packages are unavailable.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import numpy as np

from semcache.domain.exceptions import EmbeddingError, ValidationError

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 32_000


class Embedder(ABC):
    """Turns text into a fixed-dimension vector tagged with the model version."""

    @property
    @abstractmethod
    def model_tag(self) -> str:
        """Model/version identifier stored with every vector."""
        ...

    @abstractmethod
    def _encode(self, text: str) -> np.ndarray: ...

    async def embed(self, text: str, context: str | None = None) -> tuple[np.ndarray, str]:
        """Embed the prompt. Context scopes matching via the partition key, not the vector.

        Failures are terminal for the request and never retried.
        """
        if len(text) > MAX_INPUT_CHARS:
            raise ValidationError(f"Input exceeds {MAX_INPUT_CHARS} characters")
        try:
            vector = await asyncio.to_thread(self._encode, text)
        except Exception as e:
            logger.error("Embedding failed with %s: %s", self.model_tag, e)
            raise EmbeddingError("Embedding generation failed") from e
        return np.asarray(vector, dtype=np.float64).reshape(-1), self.model_tag


class EmbeddingService(Embedder):
    def __init__(self, model_name: str = "all-MiniLM-L6-v2", model_version: str = "1"):
        from sentence_transformers import SentenceTransformer

        self._model_name = model_name
        self._model_version = model_version
        self._model = SentenceTransformer(model_name)

    @property
    def model_tag(self) -> str:
        return f"{self._model_name}@{self._model_version}"

    @property
    def embedding_dimension(self) -> int:
        return self._model.get_sentence_embedding_dimension()

    def _encode(self, text: str) -> np.ndarray:
        emb = self._model.encode(text, normalize_embeddings=True, convert_to_numpy=True)
        return np.asarray(emb)
