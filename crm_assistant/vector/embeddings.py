"""
Embedding providers. Vectors are advisory; the record store stays canonical.
"""

import hashlib
import re
import time
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import ollama

from ..core.config import EMBED_DIMENSION, OLLAMA_EMBED_MODEL, OLLAMA_HEALTH_TTL_SEC, OLLAMA_HOST
from ..util.logging import logger

_TOKEN = re.compile(r"[a-z0-9]+")


class EmbeddingError(RuntimeError):
    """Raised when a provider returns no usable vector."""


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    def is_available(self) -> bool:
        """Whether the provider can currently produce embeddings."""
        return True


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Feature-hashed bag of words, L2 normalized.

    Texts that share words land near each other, which is enough for offline
    development and tests without a model server.
    """

    def __init__(self, dimension: int = EMBED_DIMENSION):
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode()).digest()
            index = int.from_bytes(digest[:4], 'little') % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.tolist()

    def get_dimension(self) -> int:
        return self.dimension


class OllamaEmbeddingProvider(IEmbeddingProvider):
    """Embeddings from a local Ollama server.

    Availability is cached for `health_ttl` seconds so a missing server does
    not cost a round trip on every query.
    """

    def __init__(self, host: str = OLLAMA_HOST, model_name: str = OLLAMA_EMBED_MODEL,
                 client: ollama.Client = None, health_ttl: float = OLLAMA_HEALTH_TTL_SEC):
        self.host = host
        self.model_name = model_name
        self.client = client or ollama.Client(host=host)
        self.health_ttl = health_ttl
        self._dimension: Optional[int] = None
        self._resolved_model: Optional[str] = None
        self._checked_at: float = 0.0

    def _refresh_health(self):
        from ..agents.provider import check_provider_health

        health = check_provider_health(self.client, embed_model=self.model_name)
        self._resolved_model = health['embeddingModel'] if health['hasEmbeddings'] else None
        self._checked_at = time.monotonic()

    def is_available(self) -> bool:
        if not self._checked_at or time.monotonic() - self._checked_at > self.health_ttl:
            self._refresh_health()
        return self._resolved_model is not None

    def embed_text(self, text: str) -> list[float]:
        if not self.is_available():
            raise EmbeddingError("No Ollama embedding model available")

        response = self.client.embed(model=self._resolved_model, input=text)
        embeddings = response['embeddings']
        if not embeddings or not embeddings[0]:
            raise EmbeddingError(f"Empty embedding from {self._resolved_model}")

        vector = [float(v) for v in embeddings[0]]
        if self._dimension is None:
            self._dimension = len(vector)
            logger.info(f"Ollama embedding model {self._resolved_model} dimension {self._dimension}")
        return vector

    def get_dimension(self) -> int:
        return self._dimension or EMBED_DIMENSION
