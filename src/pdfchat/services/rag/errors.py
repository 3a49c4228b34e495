"""Error taxonomy for ingestion and retrieval.

Pipeline errors carry a ``retryable`` flag that the worker reads when a job
fails: retryable failures go back to the queue with backoff, the rest are
dead-lettered immediately.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    retryable: bool = False


class ConfigurationError(PipelineError, ValueError):
    """Bad parameters (chunk sizes, provider names, batch sizes)."""

    retryable = False


class ExtractionError(PipelineError):
    """The input document cannot be turned into text."""

    retryable = False


class EmbeddingError(PipelineError):
    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class VectorIndexError(PipelineError):
    retryable = True


class ObjectStoreError(PipelineError):
    retryable = True


class RetrievalError(RuntimeError):
    """Retrieval could not reach the vector index or the embedding service."""
