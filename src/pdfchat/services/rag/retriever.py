from __future__ import annotations

from dataclasses import dataclass

import structlog

from pdfchat.services.rag.embedding_client import EmbeddingClient
from pdfchat.services.rag.errors import EmbeddingError, RetrievalError, VectorIndexError
from pdfchat.services.rag.query_rewriter import QueryRewriter
from pdfchat.services.rag.types import (
    ChunkRecord,
    IndexHit,
    QueryAnalysis,
    RetrievalResponse,
    RetrievalResult,
    RetrievalStrategy,
)
from pdfchat.services.rag.vector_index import VectorIndex

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ScoringConfig:
    """Rank-decay scores for each candidate set and the fusion weights.

    Both candidate sets get ``base - rank * decay``. In fusion the semantic
    score is multiplied by ``semantic_boost`` and the keyword score by
    ``keyword_weight``; a chunk found by both keeps the larger product.
    """

    semantic_base: float = 1.0
    semantic_decay: float = 0.1
    keyword_base: float = 0.8
    keyword_decay: float = 0.05
    semantic_boost: float = 1.2
    keyword_weight: float = 1.0
    high_similarity_threshold: float = 0.9


@dataclass(frozen=True)
class RetrievalOptions:
    max_results: int = 5
    min_score: float = 0.7
    use_query_rewriting: bool = True
    use_hybrid_search: bool = True


@dataclass(frozen=True)
class Candidate:
    chunk: ChunkRecord
    score: float
    similarity: float
    matched_by: tuple[str, ...]

    @property
    def key(self) -> tuple[str, int]:
        return (self.chunk.document_id, self.chunk.chunk_index)


def rank_scores(hits: list[IndexHit], *, base: float, decay: float, label: str) -> list[Candidate]:
    return [
        Candidate(
            chunk=hit.chunk,
            score=max(0.0, base - rank * decay),
            similarity=hit.similarity,
            matched_by=(label,),
        )
        for rank, hit in enumerate(hits)
    ]


def fuse_candidates(
    semantic: list[Candidate],
    keyword: list[Candidate],
    *,
    scoring: ScoringConfig,
) -> list[Candidate]:
    """Merge both candidate sets keyed by (document id, chunk index).

    The result never scores a chunk below either of its weighted inputs, so
    adding keyword evidence can only raise a semantic candidate.
    """
    fused: dict[tuple[str, int], Candidate] = {}
    for candidate in semantic:
        fused[candidate.key] = Candidate(
            chunk=candidate.chunk,
            score=candidate.score * scoring.semantic_boost,
            similarity=candidate.similarity,
            matched_by=candidate.matched_by,
        )

    for candidate in keyword:
        weighted = candidate.score * scoring.keyword_weight
        existing = fused.get(candidate.key)
        if existing is None:
            fused[candidate.key] = Candidate(
                chunk=candidate.chunk,
                score=weighted,
                similarity=candidate.similarity,
                matched_by=candidate.matched_by,
            )
            continue
        fused[candidate.key] = Candidate(
            chunk=existing.chunk,
            score=max(existing.score, weighted),
            similarity=max(existing.similarity, candidate.similarity),
            matched_by=existing.matched_by + candidate.matched_by,
        )

    return sort_candidates(list(fused.values()))


def sort_candidates(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda candidate: (-candidate.score, candidate.chunk.chunk_index))


def relevance_reason(content: str, score: float, keywords: tuple[str, ...], *, threshold: float) -> str:
    lowered = content.lower()
    found = [keyword for keyword in keywords if keyword.lower() in lowered]
    if found:
        return f"Contains relevant keywords: {', '.join(found)}"
    if score > threshold:
        return "High semantic similarity to query"
    return "Relevant content match"


def build_context(results: list[RetrievalResult]) -> str:
    return "\n\n".join(
        f"[{result.source}#{result.chunk_index}]\n{result.content}" for result in results
    )


class Retriever:
    """Document-scoped retrieval over one vector index.

    Complex questions take the hybrid path (semantic plus keyword search);
    everything else is semantic only. Retrieval holds no mutable state, so one
    instance serves concurrent requests.
    """

    def __init__(
        self,
        *,
        vector_index: VectorIndex,
        embedding_client: EmbeddingClient,
        query_rewriter: QueryRewriter,
        scoring: ScoringConfig | None = None,
    ) -> None:
        self._vector_index = vector_index
        self._embedding_client = embedding_client
        self._query_rewriter = query_rewriter
        self._scoring = scoring or ScoringConfig()

    def retrieve(
        self,
        document_id: str,
        question: str,
        options: RetrievalOptions | None = None,
    ) -> RetrievalResponse:
        options = options or RetrievalOptions()
        if options.max_results <= 0:
            raise ValueError("max_results must be > 0")
        if not question.strip():
            raise ValueError("question must not be empty")

        try:
            indexed = self._vector_index.count(document_id)
        except VectorIndexError as exc:
            raise RetrievalError(f"vector index unavailable: {exc}") from exc

        if indexed == 0:
            analysis = self._query_rewriter.analyze(question, rewrite=False)
            logger.info("retrieval_no_context", document_id=document_id)
            return RetrievalResponse(results=[], analysis=analysis, strategy="semantic")

        analysis = self._query_rewriter.analyze(question, rewrite=options.use_query_rewriting)
        strategy: RetrievalStrategy = (
            "hybrid"
            if options.use_hybrid_search and analysis.complexity == "complex"
            else "semantic"
        )
        candidate_count = options.max_results * 2

        try:
            if strategy == "hybrid":
                candidates = self._hybrid_search(document_id, analysis, candidate_count)
            else:
                candidates = self._semantic_search(
                    document_id, analysis.rewritten_query, candidate_count
                )
        except (EmbeddingError, VectorIndexError) as exc:
            raise RetrievalError(f"retrieval failed for {document_id}: {exc}") from exc

        results = [
            self._to_result(candidate, analysis)
            for candidate in candidates
            if candidate.score >= options.min_score
        ][: options.max_results]

        logger.info(
            "retrieval_completed",
            document_id=document_id,
            strategy=strategy,
            candidates=len(candidates),
            results=len(results),
        )
        return RetrievalResponse(results=results, analysis=analysis, strategy=strategy)

    def _search(self, document_id: str, text: str, k: int) -> list[IndexHit]:
        vectors = self._embedding_client.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingError(f"expected 1 vector, got {len(vectors)}", transient=False)
        return self._vector_index.query(vectors[0], k, {"document_id": document_id})

    def _semantic_search(self, document_id: str, text: str, k: int) -> list[Candidate]:
        hits = self._search(document_id, text, k)
        return sort_candidates(
            rank_scores(
                hits,
                base=self._scoring.semantic_base,
                decay=self._scoring.semantic_decay,
                label="semantic",
            )
        )

    def _hybrid_search(self, document_id: str, analysis: QueryAnalysis, k: int) -> list[Candidate]:
        semantic = rank_scores(
            self._search(document_id, analysis.rewritten_query, k),
            base=self._scoring.semantic_base,
            decay=self._scoring.semantic_decay,
            label="semantic",
        )
        keyword: list[Candidate] = []
        if analysis.keywords:
            keyword = rank_scores(
                self._search(document_id, " ".join(analysis.keywords), k),
                base=self._scoring.keyword_base,
                decay=self._scoring.keyword_decay,
                label="keyword",
            )
        return fuse_candidates(semantic, keyword, scoring=self._scoring)[:k]

    def _to_result(self, candidate: Candidate, analysis: QueryAnalysis) -> RetrievalResult:
        chunk = candidate.chunk
        return RetrievalResult(
            content=chunk.text,
            document_id=chunk.document_id,
            chunk_index=chunk.chunk_index,
            source=chunk.source,
            score=round(candidate.score, 6),
            relevance_reason=relevance_reason(
                chunk.text,
                candidate.score,
                analysis.keywords,
                threshold=self._scoring.high_similarity_threshold,
            ),
            metadata={
                **chunk.metadata,
                "chunk_id": chunk.chunk_id,
                "similarity": round(candidate.similarity, 6),
                "matched_by": list(candidate.matched_by),
            },
        )
