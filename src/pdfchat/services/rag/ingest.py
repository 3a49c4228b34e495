from __future__ import annotations

from collections.abc import Callable
from time import perf_counter
from typing import TypedDict

import structlog

from pdfchat.jobs.payloads import PdfIngestionPayload, WebPageIngestionPayload
from pdfchat.object_store import ObjectStore
from pdfchat.services.rag.chunker import chunk_document
from pdfchat.services.rag.embedding_client import EmbeddingClient
from pdfchat.services.rag.errors import ConfigurationError, EmbeddingError, ExtractionError
from pdfchat.services.rag.extractor import PdfExtractor, WebPageExtractor
from pdfchat.services.rag.types import IngestionSummary
from pdfchat.services.rag.vector_index import VectorIndex

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int], None]

PAGE_SEPARATOR = "\n\n"


class IngestionResult(TypedDict):
    document_id: str
    source: str
    pages: int
    chunks: int
    embedding_dim: int
    duration_ms: int


def _no_progress(_: int) -> None:
    return None


class IngestionPipeline:
    """Extract -> chunk -> embed -> index for one job payload.

    Stages run in order and any failure aborts the whole job; the vector index
    only sees the document once every chunk has a vector.
    """

    def __init__(
        self,
        *,
        object_store: ObjectStore,
        embedding_client: EmbeddingClient,
        vector_index: VectorIndex,
        pdf_extractor: PdfExtractor | None = None,
        web_extractor: WebPageExtractor | None = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        embed_batch_size: int = 64,
    ) -> None:
        if chunk_overlap >= chunk_size:
            raise ConfigurationError("chunk_overlap must be smaller than chunk_size")
        if embed_batch_size <= 0:
            raise ConfigurationError("embed_batch_size must be > 0")
        self._object_store = object_store
        self._embedding_client = embedding_client
        self._vector_index = vector_index
        self._pdf_extractor = pdf_extractor or PdfExtractor()
        self._web_extractor = web_extractor or WebPageExtractor()
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._embed_batch_size = embed_batch_size

    def run(
        self,
        payload: PdfIngestionPayload | WebPageIngestionPayload,
        report_progress: ProgressCallback = _no_progress,
    ) -> IngestionResult:
        start = perf_counter()
        summary = self.ingest(payload, report_progress)
        return {
            "document_id": summary.document_id,
            "source": summary.source,
            "pages": summary.page_count,
            "chunks": summary.chunk_count,
            "embedding_dim": summary.embedding_dim,
            "duration_ms": int((perf_counter() - start) * 1000),
        }

    def ingest(
        self,
        payload: PdfIngestionPayload | WebPageIngestionPayload,
        report_progress: ProgressCallback = _no_progress,
    ) -> IngestionSummary:
        pages = self._extract(payload)
        report_progress(30)

        text = PAGE_SEPARATOR.join(pages)
        if not text.strip():
            raise ExtractionError(f"no extractable text in {payload.source}")

        chunks = chunk_document(
            text,
            document_id=payload.document_id,
            source=payload.source,
            chunk_size=self._chunk_size,
            chunk_overlap=self._chunk_overlap,
        )
        report_progress(40)

        vectors: list[list[float]] = []
        for start in range(0, len(chunks), self._embed_batch_size):
            batch = chunks[start : start + self._embed_batch_size]
            batch_vectors = self._embedding_client.embed_texts([chunk.text for chunk in batch])
            if len(batch_vectors) != len(batch):
                raise EmbeddingError(
                    f"expected {len(batch)} vectors, got {len(batch_vectors)}",
                    transient=False,
                )
            vectors.extend(batch_vectors)
            report_progress(40 + (45 * len(vectors)) // len(chunks))

        self._vector_index.upsert(chunks, vectors)
        report_progress(95)

        summary = IngestionSummary(
            document_id=payload.document_id,
            source=payload.source,
            page_count=len(pages),
            chunk_count=len(chunks),
            embedding_dim=len(vectors[0]) if vectors else 0,
        )
        logger.info(
            "document_ingested",
            document_id=summary.document_id,
            source=summary.source,
            pages=summary.page_count,
            chunks=summary.chunk_count,
        )
        return summary

    def _extract(self, payload: PdfIngestionPayload | WebPageIngestionPayload) -> list[str]:
        if isinstance(payload, PdfIngestionPayload):
            data = self._object_store.get(payload.storage_reference)
            return self._pdf_extractor.extract(data)
        return self._web_extractor.extract(payload.url)
