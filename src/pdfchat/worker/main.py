from __future__ import annotations

from pathlib import Path
import signal
from threading import Event, Thread
from typing import Any, Callable, Protocol

import structlog

from pdfchat.config import Settings, get_settings
from pdfchat.db import get_engine
from pdfchat.jobs.payloads import PdfIngestionPayload, WebPageIngestionPayload
from pdfchat.jobs.queue import ClaimedJob, JobQueue
from pdfchat.jobs.rate_limit import TokenBucket
from pdfchat.logging_config import configure_logging
from pdfchat.object_store import LocalObjectStore
from pdfchat.services.rag.embedding_client import build_embedding_client
from pdfchat.services.rag.extractor import PdfExtractor, WebPageExtractor
from pdfchat.services.rag.ingest import IngestionPipeline, ProgressCallback
from pdfchat.services.rag.vector_index import SqliteVectorIndex

logger = structlog.get_logger(__name__)


class Pipeline(Protocol):
    def run(
        self,
        payload: PdfIngestionPayload | WebPageIngestionPayload,
        report_progress: ProgressCallback,
    ) -> Any: ...


def _is_retryable(exc: Exception) -> bool:
    return bool(getattr(exc, "retryable", True))


class IngestionWorker:
    """Bounded pool of threads that each run one job end-to-end at a time.

    Job starts are gated by the token bucket independently of the pool size.
    ``stop`` stops claiming; in-flight jobs either finish or are left to the
    lease timeout, never marked complete early.
    """

    def __init__(
        self,
        queue: JobQueue,
        pipeline: Pipeline,
        *,
        worker_id: str,
        concurrency: int = 4,
        rate_limiter: TokenBucket | None = None,
        poll_seconds: float = 1.0,
        maintenance_seconds: float = 30.0,
        maintenance: Callable[[], None] | None = None,
    ) -> None:
        self._queue = queue
        self._pipeline = pipeline
        self._worker_id = worker_id
        self._concurrency = max(1, concurrency)
        self._rate_limiter = rate_limiter
        self._poll_seconds = poll_seconds
        self._maintenance_seconds = maintenance_seconds
        self._maintenance = maintenance
        self._stop_event = Event()
        self._threads: list[Thread] = []

    @property
    def stop_event(self) -> Event:
        return self._stop_event

    def process_next(self, lease_owner: str | None = None) -> bool:
        """Claim and run at most one job; ``True`` if a job was processed."""
        job = self._queue.claim_next(lease_owner or self._worker_id)
        if job is None:
            return False
        if self._rate_limiter is not None:
            # only job starts consume tokens, idle polls do not
            self._rate_limiter.acquire()
        self._process_claimed_job(job)
        return True

    def _process_claimed_job(self, job: ClaimedJob) -> None:
        log = logger.bind(job_id=job.id, worker_id=job.lease_owner, attempt=job.attempts)

        def report_progress(progress: int) -> None:
            if not self._queue.report_progress(job.id, job.lease_owner, progress):
                log.warning("job_progress_rejected", progress=progress)

        try:
            result = self._pipeline.run(job.payload, report_progress)
        except Exception as exc:
            status = self._queue.fail(
                job.id,
                job.lease_owner,
                str(exc),
                retryable=_is_retryable(exc),
            )
            log.warning(
                "job_failed",
                attempts=f"{job.attempts}/{job.max_attempts}",
                status=status,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        if self._queue.complete(job.id, job.lease_owner, dict(result)):
            log.info("job_succeeded", result=dict(result))

    def _run_loop(self, lease_owner: str) -> None:
        while not self._stop_event.is_set():
            try:
                processed = self.process_next(lease_owner)
            except Exception:
                logger.exception("worker_loop_error", worker_id=lease_owner)
                processed = False
            if not processed:
                self._stop_event.wait(self._poll_seconds)

    def _maintenance_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                if self._maintenance is not None:
                    self._maintenance()
                else:
                    self._queue.requeue_expired_leases()
            except Exception:
                logger.exception("worker_maintenance_error", worker_id=self._worker_id)
            self._stop_event.wait(self._maintenance_seconds)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("worker already started")
        self._stop_event.clear()
        for index in range(self._concurrency):
            lease_owner = f"{self._worker_id}:{index}"
            thread = Thread(
                target=self._run_loop,
                args=(lease_owner,),
                name=lease_owner,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        maintenance_thread = Thread(
            target=self._maintenance_loop,
            name=f"{self._worker_id}:maintenance",
            daemon=True,
        )
        maintenance_thread.start()
        self._threads.append(maintenance_thread)
        logger.info("worker_started", worker_id=self._worker_id, concurrency=self._concurrency)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        self._threads = []
        logger.info("worker_stopped", worker_id=self._worker_id, abandoned_threads=alive)


def build_worker(settings: Settings) -> IngestionWorker:
    queue = JobQueue(
        get_engine(),
        max_attempts=settings.job_max_attempts,
        retry_base_seconds=settings.job_retry_base_seconds,
        retry_max_seconds=settings.job_retry_max_seconds,
        visibility_timeout_seconds=settings.job_visibility_timeout_seconds,
    )
    pipeline = IngestionPipeline(
        object_store=LocalObjectStore(Path(settings.object_store_dir)),
        embedding_client=build_embedding_client(settings),
        vector_index=SqliteVectorIndex(Path(settings.vector_index_path)),
        pdf_extractor=PdfExtractor(
            max_pages=settings.pdf_max_pages,
            max_bytes=settings.pdf_max_bytes,
        ),
        web_extractor=WebPageExtractor(
            timeout_seconds=settings.web_fetch_timeout_seconds,
            max_bytes=settings.web_max_bytes,
        ),
        chunk_size=settings.rag_chunk_size,
        chunk_overlap=settings.rag_chunk_overlap,
        embed_batch_size=settings.embed_batch_size,
    )

    def maintenance() -> None:
        queue.requeue_expired_leases()
        queue.purge_finished(
            completed_older_than_seconds=settings.job_completed_retention_seconds,
            failed_older_than_seconds=settings.job_failed_retention_seconds,
        )

    return IngestionWorker(
        queue,
        pipeline,
        worker_id=settings.worker_id,
        concurrency=settings.worker_concurrency,
        rate_limiter=TokenBucket(
            max_tokens=settings.worker_rate_limit_max,
            window_seconds=settings.worker_rate_limit_window_seconds,
        ),
        poll_seconds=settings.worker_poll_seconds,
        maintenance_seconds=settings.worker_maintenance_seconds,
        maintenance=maintenance,
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    worker = build_worker(settings)

    def _shutdown(signum: int, _frame: object) -> None:
        logger.info("worker_shutdown_requested", signal=signum)
        worker.stop_event.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    worker.start()
    worker.stop_event.wait()
    worker.stop(timeout=settings.job_visibility_timeout_seconds)


if __name__ == "__main__":
    main()
