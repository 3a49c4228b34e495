"""Durable at-least-once ingestion queue backed by the ``ingestion_jobs`` table.

State machine per job::

    queued -> active -> completed
                     -> queued   (retryable failure or expired lease, attempts left)
                     -> failed   (permanent failure or attempts exhausted; dead-letter)

A claim increments ``attempts`` and takes a lease that expires after the
visibility timeout. Progress reports renew the lease. A job whose lease runs
out is requeued (or dead-lettered) by ``requeue_expired_leases`` so a crashed
worker never loses it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import structlog

from pdfchat.jobs.payloads import (
    PayloadError,
    PdfIngestionPayload,
    WebPageIngestionPayload,
    job_key,
    parse_payload,
)
from pdfchat.models import JobRecord

logger = structlog.get_logger(__name__)

QUEUED = "queued"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

IN_FLIGHT_STATUSES = (QUEUED, ACTIVE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    status: str
    created: bool


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    payload: PdfIngestionPayload | WebPageIngestionPayload
    attempts: int
    max_attempts: int
    lease_owner: str


@dataclass(frozen=True)
class JobStatus:
    id: str
    kind: str
    status: str
    progress: int
    attempts: int
    max_attempts: int
    document_id: str
    error: str | None
    result: dict[str, Any] | None
    created_at: datetime | None
    updated_at: datetime | None
    finished_at: datetime | None


def _to_status(job: JobRecord) -> JobStatus:
    return JobStatus(
        id=job.id,
        kind=job.kind,
        status=job.status,
        progress=job.progress,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        document_id=job.document_id,
        error=job.error,
        result=job.result_json,
        created_at=job.created_at,
        updated_at=job.updated_at,
        finished_at=job.finished_at,
    )


class JobQueue:
    def __init__(
        self,
        engine: Engine,
        *,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        visibility_timeout_seconds: float = 300.0,
    ) -> None:
        self._engine = engine
        self._max_attempts = max(1, max_attempts)
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._visibility_timeout = timedelta(seconds=visibility_timeout_seconds)

    def enqueue(self, payload: PdfIngestionPayload | WebPageIngestionPayload) -> EnqueueResult:
        """Queue ``payload`` unless a job with the same key is already queued or active.

        A completed or failed job with the same key is reset and queued again,
        which is how a document gets re-ingested.
        """
        job_id = job_key(payload)
        now = _utcnow()
        payload_json = payload.model_dump(mode="json")
        filename = payload.filename if isinstance(payload, PdfIngestionPayload) else None

        try:
            with Session(self._engine) as session, session.begin():
                existing = session.get(JobRecord, job_id, with_for_update=True)
                if existing is not None and existing.status in IN_FLIGHT_STATUSES:
                    logger.info("job_enqueue_deduplicated", job_id=job_id, status=existing.status)
                    return EnqueueResult(job_id=job_id, status=existing.status, created=False)

                if existing is None:
                    session.add(
                        JobRecord(
                            id=job_id,
                            kind=payload.kind,
                            status=QUEUED,
                            document_id=payload.document_id,
                            filename=filename,
                            storage_reference=payload.dedup_source,
                            payload_json=payload_json,
                            attempts=0,
                            max_attempts=self._max_attempts,
                            progress=0,
                            available_at=now,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                else:
                    existing.kind = payload.kind
                    existing.status = QUEUED
                    existing.document_id = payload.document_id
                    existing.filename = filename
                    existing.storage_reference = payload.dedup_source
                    existing.payload_json = payload_json
                    existing.attempts = 0
                    existing.max_attempts = self._max_attempts
                    existing.progress = 0
                    existing.available_at = now
                    existing.lease_owner = None
                    existing.lease_expires_at = None
                    existing.started_at = None
                    existing.finished_at = None
                    existing.error = None
                    existing.result_json = None
                    existing.updated_at = now
        except IntegrityError:
            # lost an insert race against a concurrent enqueue of the same key
            current = self.get_status(job_id)
            if current is None:
                raise
            return EnqueueResult(job_id=job_id, status=current.status, created=False)

        logger.info(
            "job_enqueued",
            job_id=job_id,
            kind=payload.kind,
            document_id=payload.document_id,
        )
        return EnqueueResult(job_id=job_id, status=QUEUED, created=True)

    def claim_next(self, worker_id: str) -> ClaimedJob | None:
        self.requeue_expired_leases()
        now = _utcnow()

        with self._engine.begin() as connection:
            stmt = (
                select(JobRecord.id)
                .where(JobRecord.status == QUEUED)
                .where(JobRecord.available_at <= now)
                .order_by(
                    JobRecord.available_at.asc(),
                    JobRecord.created_at.asc(),
                    JobRecord.id.asc(),
                )
                .limit(1)
            )
            if connection.dialect.name == "postgresql":
                stmt = stmt.with_for_update(skip_locked=True)

            job_id = connection.execute(stmt).scalar_one_or_none()
            if job_id is None:
                return None

            claimed = connection.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .where(JobRecord.status == QUEUED)
                .values(
                    status=ACTIVE,
                    attempts=JobRecord.attempts + 1,
                    progress=0,
                    lease_owner=worker_id,
                    lease_expires_at=now + self._visibility_timeout,
                    started_at=now,
                    finished_at=None,
                    updated_at=now,
                )
            )
            if claimed.rowcount != 1:
                return None

            row = connection.execute(
                select(JobRecord.payload_json, JobRecord.attempts, JobRecord.max_attempts).where(
                    JobRecord.id == job_id
                )
            ).one()

        try:
            payload = parse_payload(row.payload_json)
        except PayloadError as exc:
            self.fail(job_id, worker_id, str(exc), retryable=False)
            return None

        logger.info(
            "job_claimed",
            job_id=job_id,
            worker_id=worker_id,
            attempt=int(row.attempts),
            max_attempts=int(row.max_attempts),
        )
        return ClaimedJob(
            id=job_id,
            payload=payload,
            attempts=int(row.attempts),
            max_attempts=int(row.max_attempts),
            lease_owner=worker_id,
        )

    def report_progress(self, job_id: str, worker_id: str, progress: int) -> bool:
        """Record progress (never decreasing) and renew the lease.

        Returns ``False`` when the worker no longer owns the job.
        """
        value = max(0, min(100, int(progress)))
        now = _utcnow()
        with self._engine.begin() as connection:
            updated = connection.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .where(JobRecord.status == ACTIVE)
                .where(JobRecord.lease_owner == worker_id)
                .values(
                    progress=case(
                        (JobRecord.progress < value, value),
                        else_=JobRecord.progress,
                    ),
                    lease_expires_at=now + self._visibility_timeout,
                    updated_at=now,
                )
            )
        return updated.rowcount == 1

    def complete(self, job_id: str, worker_id: str, result: dict[str, Any]) -> bool:
        now = _utcnow()
        with self._engine.begin() as connection:
            updated = connection.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .where(JobRecord.status == ACTIVE)
                .where(JobRecord.lease_owner == worker_id)
                .values(
                    status=COMPLETED,
                    progress=100,
                    result_json=result,
                    error=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                )
            )
        if updated.rowcount != 1:
            logger.warning("job_lease_lost", job_id=job_id, worker_id=worker_id, action="complete")
            return False
        return True

    def fail(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        *,
        retryable: bool,
    ) -> str | None:
        """Requeue with backoff or dead-letter; returns the new status.

        ``None`` means the worker had already lost the lease and nothing changed.
        """
        now = _utcnow()
        with self._engine.begin() as connection:
            row = connection.execute(
                select(JobRecord.attempts, JobRecord.max_attempts)
                .where(JobRecord.id == job_id)
                .where(JobRecord.status == ACTIVE)
                .where(JobRecord.lease_owner == worker_id)
            ).one_or_none()
            if row is None:
                logger.warning("job_lease_lost", job_id=job_id, worker_id=worker_id, action="fail")
                return None

            attempts = int(row.attempts)
            max_attempts = int(row.max_attempts)
            if retryable and attempts < max_attempts:
                status = QUEUED
                delay = self.retry_delay_seconds(attempts)
                values: dict[str, Any] = {"available_at": now + timedelta(seconds=delay)}
            else:
                status = FAILED
                delay = None
                values = {"finished_at": now}

            connection.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id)
                .values(
                    status=status,
                    error=error_message,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                    **values,
                )
            )

        if status == FAILED:
            logger.error(
                "job_dead_lettered",
                job_id=job_id,
                attempts=attempts,
                max_attempts=max_attempts,
                retryable=retryable,
                error=error_message,
            )
        else:
            logger.warning(
                "job_requeued",
                job_id=job_id,
                attempts=attempts,
                max_attempts=max_attempts,
                retry_in_seconds=delay,
                error=error_message,
            )
        return status

    def retry_delay_seconds(self, attempts: int) -> float:
        return min(self._retry_base_seconds * (2 ** max(0, attempts - 1)), self._retry_max_seconds)

    def requeue_expired_leases(self) -> int:
        now = _utcnow()
        recovered = 0
        with self._engine.begin() as connection:
            rows = connection.execute(
                select(JobRecord.id, JobRecord.attempts, JobRecord.max_attempts, JobRecord.lease_owner)
                .where(JobRecord.status == ACTIVE)
                .where(JobRecord.lease_expires_at < now)
            ).all()

            for row in rows:
                exhausted = int(row.attempts) >= int(row.max_attempts)
                message = f"lease held by {row.lease_owner} expired before the job finished"
                values: dict[str, Any] = (
                    {"status": FAILED, "finished_at": now}
                    if exhausted
                    else {"status": QUEUED, "available_at": now}
                )
                updated = connection.execute(
                    update(JobRecord)
                    .where(JobRecord.id == row.id)
                    .where(JobRecord.status == ACTIVE)
                    .where(JobRecord.lease_expires_at < now)
                    .values(
                        error=message,
                        lease_owner=None,
                        lease_expires_at=None,
                        updated_at=now,
                        **values,
                    )
                )
                if updated.rowcount == 1:
                    recovered += 1
                    logger.warning(
                        "job_lease_expired",
                        job_id=row.id,
                        lease_owner=row.lease_owner,
                        status=values["status"],
                    )
        return recovered

    def get_status(self, job_id: str) -> JobStatus | None:
        with Session(self._engine) as session:
            job = session.get(JobRecord, job_id)
            if job is None:
                return None
            return _to_status(job)

    def list_jobs(self, *, status: str | None = None, kind: str | None = None) -> list[JobStatus]:
        with Session(self._engine) as session:
            stmt = select(JobRecord)
            if status is not None:
                stmt = stmt.where(JobRecord.status == status)
            if kind is not None:
                stmt = stmt.where(JobRecord.kind == kind)
            jobs = session.scalars(
                stmt.order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
            ).all()
            return [_to_status(job) for job in jobs]

    def dead_letters(self) -> list[JobStatus]:
        return self.list_jobs(status=FAILED)

    def purge_finished(
        self,
        *,
        completed_older_than_seconds: float,
        failed_older_than_seconds: float,
    ) -> int:
        now = _utcnow()
        completed_cutoff = now - timedelta(seconds=completed_older_than_seconds)
        failed_cutoff = now - timedelta(seconds=failed_older_than_seconds)
        with self._engine.begin() as connection:
            deleted = connection.execute(
                delete(JobRecord).where(
                    or_(
                        (JobRecord.status == COMPLETED) & (JobRecord.finished_at < completed_cutoff),
                        (JobRecord.status == FAILED) & (JobRecord.finished_at < failed_cutoff),
                    )
                )
            )
        if deleted.rowcount:
            logger.info("jobs_purged", count=deleted.rowcount)
        return int(deleted.rowcount)
