from dataclasses import asdict
from datetime import datetime, timezone
from functools import lru_cache
import hashlib
from pathlib import Path
from typing import Annotated, Any
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import structlog

from pdfchat.config import get_settings
from pdfchat.db import get_engine
from pdfchat.jobs.payloads import PdfIngestionPayload, WebPageIngestionPayload
from pdfchat.jobs.queue import EnqueueResult, JobQueue, JobStatus
from pdfchat.llm import LLMClient, LLMClientError, build_llm_client
from pdfchat.logging_config import configure_logging
from pdfchat.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from pdfchat.services.rag.errors import RetrievalError
from pdfchat.services.rag.query_rewriter import QueryRewriter
from pdfchat.services.rag.retriever import RetrievalOptions, Retriever, build_context
from pdfchat.services.rag.types import RetrievalResponse, RetrievalResult
from pdfchat.services.rag.vector_index import SqliteVectorIndex, VectorIndex
from pdfchat.sessions import SESSION_EXPIRED_MESSAGE, SessionCache, WebSession, build_session_cache

logger = structlog.get_logger(__name__)

app = FastAPI(title="PDF Chat Core API", version="0.1.0")

NO_CONTEXT = "No relevant context found in the document."


class IngestionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_id: str = Field(min_length=1, max_length=128)
    storage_reference: str = Field(min_length=1)
    filename: str = Field(min_length=1, max_length=255)


class WebIngestionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_id: str = Field(min_length=1, max_length=128)
    url: str = Field(pattern=r"^https?://\S+$", max_length=2048)


class RetrieveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_id: str = Field(min_length=1, max_length=128)
    question: str = Field(min_length=1)
    max_results: int | None = Field(default=None, ge=1, le=50)
    min_score: float | None = Field(default=None, ge=0.0)
    use_query_rewriting: bool = True
    use_hybrid_search: bool = True


class WebSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(pattern=r"^https?://\S+$", max_length=2048)
    session_id: str | None = Field(default=None, min_length=1, max_length=128)


class WebChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = Field(min_length=1)


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    get_engine()


def get_job_queue() -> JobQueue:
    settings = get_settings()
    return JobQueue(
        get_engine(),
        max_attempts=settings.job_max_attempts,
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        visibility_timeout_seconds=settings.job_visibility_timeout_seconds,
    )


def get_vector_index() -> VectorIndex:
    return SqliteVectorIndex(Path(get_settings().vector_index_path))


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def get_llm_client() -> LLMClient | None:
    return build_llm_client(get_settings())


@lru_cache
def get_session_cache() -> SessionCache:
    return build_session_cache(get_settings())


def get_retriever(
    vector_index: Annotated[VectorIndex, Depends(get_vector_index)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    llm_client: Annotated[LLMClient | None, Depends(get_llm_client)],
) -> Retriever:
    return Retriever(
        vector_index=vector_index,
        embedding_client=embedding_client,
        query_rewriter=QueryRewriter(llm_client),
    )


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _enqueue_response(result: EnqueueResult) -> dict[str, Any]:
    return {"job_id": result.job_id, "status": result.status, "created": result.created}


def _job_summary(job: JobStatus) -> dict[str, Any]:
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "progress": job.progress,
    }


def _job_detail(job: JobStatus) -> dict[str, Any]:
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "progress": job.progress,
        "document_id": job.document_id,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "error": job.error,
        "result": job.result,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "finished_at": _to_iso(job.finished_at),
    }


def _result_payload(result: RetrievalResult) -> dict[str, Any]:
    return {
        "content": result.content,
        "document_id": result.document_id,
        "chunk_index": result.chunk_index,
        "source": result.source,
        "score": result.score,
        "relevance_reason": result.relevance_reason,
        "metadata": result.metadata,
    }


def _retrieval_payload(response: RetrievalResponse) -> dict[str, Any]:
    analysis = asdict(response.analysis)
    analysis["keywords"] = list(response.analysis.keywords)
    return {
        "results": [_result_payload(result) for result in response.results],
        "analysis": analysis,
        "strategy": response.strategy,
    }


def _web_document_id(url: str) -> str:
    return f"web-{hashlib.sha256(url.encode('utf-8')).hexdigest()[:24]}"


def _run_retrieval(
    retriever: Retriever,
    *,
    document_id: str,
    question: str,
    max_results: int | None = None,
    min_score: float | None = None,
    use_query_rewriting: bool = True,
    use_hybrid_search: bool = True,
) -> RetrievalResponse:
    if not question.strip():
        raise HTTPException(status_code=400, detail="question must not be empty")

    settings = get_settings()
    options = RetrievalOptions(
        max_results=max_results or settings.retrieval_max_results,
        min_score=settings.retrieval_min_score if min_score is None else min_score,
        use_query_rewriting=use_query_rewriting,
        use_hybrid_search=use_hybrid_search,
    )
    try:
        return retriever.retrieve(document_id, question, options)
    except RetrievalError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _answer(
    llm_client: LLMClient | None,
    *,
    question: str,
    retrieval: RetrievalResponse,
) -> dict[str, Any]:
    if llm_client is None:
        raise HTTPException(status_code=503, detail="answer generation is disabled")

    context = build_context(retrieval.results) or NO_CONTEXT
    try:
        chat_result = llm_client.generate_answer(question=question.strip(), context=context)
    except LLMClientError as exc:
        raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc

    payload = _retrieval_payload(retrieval)
    return {
        "answer": chat_result.answer,
        "sources": payload["results"],
        "analysis": payload["analysis"],
        "meta": {
            "model": chat_result.model,
            "used_fallback": chat_result.used_fallback,
            "strategy": retrieval.strategy,
            "retrieved_count": len(retrieval.results),
        },
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/ingestions")
def enqueue_ingestion(
    request: IngestionRequest,
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> JSONResponse:
    payload = PdfIngestionPayload(
        document_id=request.document_id,
        storage_reference=request.storage_reference,
        filename=request.filename,
    )
    return JSONResponse(status_code=202, content=_enqueue_response(queue.enqueue(payload)))


@app.post("/web-ingestions")
def enqueue_web_ingestion(
    request: WebIngestionRequest,
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> JSONResponse:
    payload = WebPageIngestionPayload(document_id=request.document_id, url=request.url)
    return JSONResponse(status_code=202, content=_enqueue_response(queue.enqueue(payload)))


@app.get("/jobs")
def list_jobs(
    queue: Annotated[JobQueue, Depends(get_job_queue)],
    kind: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    return [_job_summary(job) for job in queue.list_jobs(status=status, kind=kind)]


@app.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> dict[str, Any]:
    job = queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_detail(job)


@app.post("/retrieve")
def retrieve(
    request: RetrieveRequest,
    retriever: Annotated[Retriever, Depends(get_retriever)],
) -> dict[str, Any]:
    response = _run_retrieval(
        retriever,
        document_id=request.document_id,
        question=request.question,
        max_results=request.max_results,
        min_score=request.min_score,
        use_query_rewriting=request.use_query_rewriting,
        use_hybrid_search=request.use_hybrid_search,
    )
    return _retrieval_payload(response)


@app.post("/ask")
def ask(
    request: RetrieveRequest,
    retriever: Annotated[Retriever, Depends(get_retriever)],
    llm_client: Annotated[LLMClient | None, Depends(get_llm_client)],
) -> dict[str, Any]:
    response = _run_retrieval(
        retriever,
        document_id=request.document_id,
        question=request.question,
        max_results=request.max_results,
        min_score=request.min_score,
        use_query_rewriting=request.use_query_rewriting,
        use_hybrid_search=request.use_hybrid_search,
    )
    return _answer(llm_client, question=request.question, retrieval=response)


@app.post("/web-sessions")
def create_web_session(
    request: WebSessionRequest,
    queue: Annotated[JobQueue, Depends(get_job_queue)],
    sessions: Annotated[SessionCache, Depends(get_session_cache)],
) -> JSONResponse:
    document_id = _web_document_id(request.url)
    enqueued = queue.enqueue(WebPageIngestionPayload(document_id=document_id, url=request.url))
    session = WebSession(
        session_id=request.session_id or uuid4().hex,
        url=request.url,
        document_id=document_id,
        job_id=enqueued.job_id,
        created_at=datetime.now(timezone.utc),
    )
    sessions.put(session)
    logger.info("web_session_created", session_id=session.session_id, url=session.url)
    return JSONResponse(
        status_code=202,
        content={
            "session_id": session.session_id,
            "document_id": document_id,
            **_enqueue_response(enqueued),
        },
    )


@app.post("/web-sessions/{session_id}/ask")
def ask_web_session(
    session_id: str,
    request: WebChatRequest,
    sessions: Annotated[SessionCache, Depends(get_session_cache)],
    retriever: Annotated[Retriever, Depends(get_retriever)],
    llm_client: Annotated[LLMClient | None, Depends(get_llm_client)],
) -> dict[str, Any]:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=400, detail=SESSION_EXPIRED_MESSAGE)

    response = _run_retrieval(retriever, document_id=session.document_id, question=request.message)
    answer = _answer(llm_client, question=request.message, retrieval=response)
    answer["session_id"] = session.session_id
    answer["url"] = session.url
    return answer


def run() -> None:
    import uvicorn

    uvicorn.run("pdfchat.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
