from dataclasses import dataclass, field
from typing import Any, Literal

Intent = Literal["factual", "analytical", "comparative", "procedural", "definitional", "unknown"]
Complexity = Literal["simple", "moderate", "complex"]
RetrievalStrategy = Literal["semantic", "hybrid"]

INTENTS: tuple[str, ...] = (
    "factual",
    "analytical",
    "comparative",
    "procedural",
    "definitional",
    "unknown",
)


@dataclass(frozen=True)
class ChunkRecord:
    document_id: str
    chunk_index: int
    source: str
    text: str

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}-{self.chunk_index:04d}"

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "source": self.source,
        }


@dataclass(frozen=True)
class IndexHit:
    chunk: ChunkRecord
    similarity: float


@dataclass(frozen=True)
class IngestionSummary:
    document_id: str
    source: str
    page_count: int
    chunk_count: int
    embedding_dim: int


@dataclass(frozen=True)
class QueryAnalysis:
    original_query: str
    rewritten_query: str
    keywords: tuple[str, ...]
    intent: Intent
    confidence: float
    complexity: Complexity


@dataclass(frozen=True)
class RetrievalResult:
    content: str
    document_id: str
    chunk_index: int
    source: str
    score: float
    relevance_reason: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalResponse:
    results: list[RetrievalResult]
    analysis: QueryAnalysis
    strategy: RetrievalStrategy
