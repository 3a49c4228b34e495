from __future__ import annotations

from collections.abc import Callable
import hashlib
import math
from random import random
import re
from time import sleep
from typing import Protocol

import httpx
import structlog

from pdfchat.config import Settings
from pdfchat.services.rag.errors import ConfigurationError, EmbeddingError

logger = structlog.get_logger(__name__)

_TOKEN = re.compile(r"\w+")


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class HttpEmbeddingClient:
    """Client for an OpenAI-compatible ``/embeddings`` endpoint.

    Inputs are sent in batches of ``batch_size``. Network failures, 5xx and 429
    responses are retried with exponential backoff up to ``max_attempts`` per
    batch; any other failure raises a non-transient ``EmbeddingError`` at once.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        batch_size: int = 64,
        max_attempts: int = 3,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 8.0,
        sleeper: Callable[[float], None] = sleep,
    ) -> None:
        if batch_size <= 0:
            raise ConfigurationError("batch_size must be > 0")
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._batch_size = batch_size
        self._max_attempts = max(1, max_attempts)
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._sleep = sleeper

    @property
    def model(self) -> str:
        return self._model

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            vectors.extend(self._embed_with_retry(batch))
        return vectors

    def _embed_with_retry(self, texts: list[str]) -> list[list[float]]:
        delay = self._retry_base_seconds
        attempt = 1

        while True:
            try:
                return self._embed_batch(texts)
            except EmbeddingError as exc:
                if not exc.transient or attempt >= self._max_attempts:
                    raise
                logger.warning(
                    "embedding_retry",
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    delay_seconds=round(delay, 3),
                    error=str(exc),
                )
                self._sleep(delay + random() * 0.2 * delay)
                delay = min(delay * 2, self._retry_max_seconds)
                attempt += 1

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                timeout=self._timeout_seconds,
            )
        except httpx.TransportError as exc:
            raise EmbeddingError(str(exc), transient=True) from exc

        if response.status_code >= 400:
            raise EmbeddingError(
                f"embedding request failed with HTTP {response.status_code}",
                transient=_is_transient_status(response.status_code),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError("Invalid embeddings payload: not JSON", transient=False) from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingError("Invalid embeddings payload: missing data", transient=False)

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingError(
                    "Invalid embeddings payload: missing embedding vector", transient=False
                )
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}",
                transient=False,
            )

        return vectors


class HashingEmbeddingClient:
    """Offline embedding: signed token hashing into a fixed number of buckets.

    Texts sharing words end up with a positive cosine similarity, which is
    enough for development and tests.
    """

    def __init__(self, *, dimensions: int = 256) -> None:
        if dimensions <= 0:
            raise ConfigurationError("dimensions must be > 0")
        self._dimensions = dimensions

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dimensions
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimensions
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            return [value / norm for value in vector]
        return vector


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embed_provider == "hashing":
        return HashingEmbeddingClient(dimensions=settings.embed_dimensions)
    if settings.embed_provider == "http":
        return HttpEmbeddingClient(
            base_url=settings.embed_base_url,
            model=settings.embed_model,
            timeout_seconds=settings.embed_timeout_seconds,
            batch_size=settings.embed_batch_size,
            max_attempts=settings.embed_max_attempts,
            retry_base_seconds=settings.embed_retry_base_seconds,
            retry_max_seconds=settings.embed_retry_max_seconds,
        )
    raise ConfigurationError(f"unknown embedding provider: {settings.embed_provider!r}")
