# core/embeddings.py
"""Embedding providers used by the chapter memory.

``HashingEmbeddingProvider`` is deterministic and offline; ``OllamaEmbeddingProvider``
calls an Ollama server. Both return 1-D numpy vectors of ``dimension`` length.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import random
import re
from abc import ABC, abstractmethod

import httpx
import numpy as np
import structlog
from async_lru import alru_cache

from config import settings
from core.errors import ConfigurationError, ProviderError

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"[\w']+", flags=re.UNICODE)


class EmbeddingProvider(ABC):
    """Turns text into a fixed-length vector. Same input, same output."""

    def __init__(self, dimension: int = settings.EXPECTED_EMBEDDING_DIM):
        if dimension <= 0:
            raise ConfigurationError("Embedding dimension must be positive")
        self.dimension = dimension

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Return the embedding for ``text``."""

    async def aclose(self) -> None:
        """Release any held resources."""


class HashingEmbeddingProvider(EmbeddingProvider):
    """Signed feature hashing over word unigrams and bigrams, L2-normalised.

    Texts sharing vocabulary land close together, which is enough for
    continuity retrieval without an external model.
    """

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimension, sign

    def embed_sync(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=settings.EMBEDDING_DTYPE)
        tokens = [t.lower() for t in _TOKEN_RE.findall(text or "")]
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            index, sign = self._bucket(feature)
            vector[index] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector

    async def embed(self, text: str) -> np.ndarray:
        return self.embed_sync(text)


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from an Ollama ``/api/embeddings`` endpoint, cached per text."""

    def __init__(
        self,
        dimension: int = settings.EXPECTED_EMBEDDING_DIM,
        *,
        model: str = settings.EMBEDDING_MODEL,
        base_url: str = settings.OLLAMA_EMBED_URL,
        client: httpx.AsyncClient | None = None,
        retry_attempts: int = settings.LLM_RETRY_ATTEMPTS,
        retry_delay: float = settings.LLM_RETRY_DELAY_SECONDS,
    ):
        super().__init__(dimension)
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.HTTPX_TIMEOUT)
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _validate_embedding(self, embedding_list: list[float | int]) -> np.ndarray:
        embedding = np.asarray(embedding_list).astype(settings.EMBEDDING_DTYPE).flatten()
        if embedding.shape != (self.dimension,):
            raise ProviderError(
                self.model,
                f"Embedding dimension mismatch: expected ({self.dimension},), got {embedding.shape}",
            )
        return embedding

    @alru_cache(maxsize=settings.EMBEDDING_CACHE_SIZE)
    async def embed(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        payload = {"model": self.model, "prompt": text.strip()}
        last_exc: Exception | None = None
        for attempt in range(self._retry_attempts):
            try:
                response = await self._client.post(
                    f"{self._base_url}/api/embeddings", json=payload
                )
                response.raise_for_status()
                data = response.json()
                values = data.get("embedding")
                if not isinstance(values, list):
                    raise ProviderError(self.model, "No 'embedding' list in response")
                return self._validate_embedding(values)
            except httpx.HTTPStatusError as e_status:
                last_exc = e_status
                logger.warning(
                    "Ollama embedding error status",
                    attempt=attempt + 1,
                    status_code=e_status.response.status_code,
                )
                if 400 <= e_status.response.status_code < 500:
                    break
            except (httpx.RequestError, json.JSONDecodeError, ProviderError) as e_exc:
                last_exc = e_exc
                logger.warning(
                    "Ollama embedding request failed",
                    attempt=attempt + 1,
                    error=str(e_exc) or type(e_exc).__name__,
                )
            if attempt < self._retry_attempts - 1:
                delay = self._retry_delay * (2**attempt)
                await asyncio.sleep(delay + random.uniform(0, delay / 2))

        raise ProviderError(
            self.model, f"Embedding failed after retries: {last_exc}"
        ) from last_exc


def create_embedding_provider(backend: str | None = None) -> EmbeddingProvider:
    """Build the provider named by ``backend`` (defaults to settings)."""
    backend = backend or settings.EMBEDDING_BACKEND
    if backend == "hashing":
        return HashingEmbeddingProvider()
    if backend == "ollama":
        return OllamaEmbeddingProvider()
    raise ConfigurationError(f"Unsupported embedding backend '{backend}'")
