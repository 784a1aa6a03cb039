# src/application/retry_queue.py

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Mapping

from sqlalchemy.orm import Session, sessionmaker

from src.infrastructure import config
from src.domain.exceptions import BookingEngineError
from src.domain.retry_policy import calculate_next_retry, is_exhausted
from src.domain.state_machine import JobStatus, JobType
from src.infrastructure.db.models import Job
from src.infrastructure.db.session import SessionLocal, get_db_session
from src.infrastructure.repositories.job_repository import JobRepository

logger = logging.getLogger(__name__)

JobHandler = Callable[[Session, dict], dict | None]
ExhaustionHook = Callable[[Session, dict, str], None]

LEASE_EXPIRED_MESSAGE = "Lease expired while processing"


@dataclass(frozen=True)
class ProcessedJob:
    job_id: str
    job_type: JobType
    status: JobStatus
    execution_count: int
    error_message: str | None = None
    lease_lost: bool = False


class RetryQueue:
    """
    Durable job queue on top of the jobs table.

    Each job runs in three short transactions: claim, handler, outcome.
    Handlers receive their own session and commit their own work; the
    outcome transaction only touches the job row, and only while this
    worker's claim still holds.
    """

    def __init__(
        self,
        handlers: Mapping[JobType, JobHandler],
        exhaustion_hooks: Mapping[JobType, ExhaustionHook] | None = None,
        session_factory: sessionmaker = SessionLocal,
        max_attempts: int = config.WORKER_MAX_ATTEMPTS,
        base_interval_ms: int = config.RETRY_BASE_INTERVAL_MS,
        max_interval_ms: int = config.RETRY_MAX_INTERVAL_MS,
        lease_seconds: int = config.JOB_LEASE_SECONDS,
    ):
        self.handlers = dict(handlers)
        self.exhaustion_hooks = dict(exhaustion_hooks or {})
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.base_interval_ms = base_interval_ms
        self.max_interval_ms = max_interval_ms
        self.lease_seconds = lease_seconds

    def enqueue(self, job_type: JobType, data: dict, priority: int = 0) -> str:
        with get_db_session(self.session_factory) as db:
            job = JobRepository(db).create_job(job_type, data, priority=priority)
            job_id = job.id
        logger.info("Enqueued %s job %s", job_type.value, job_id)
        return job_id

    def enqueue_once(self, job_type: JobType, data: dict, priority: int = 0) -> str | None:
        """Enqueues unless a job of this type is still pending or processing."""
        with get_db_session(self.session_factory) as db:
            repository = JobRepository(db)
            if repository.has_unfinished(job_type):
                return None
            job_id = repository.create_job(job_type, data, priority=priority).id
        logger.info("Enqueued %s job %s", job_type.value, job_id)
        return job_id

    def process_next(self, now: datetime | None = None) -> ProcessedJob | None:
        """
        Claims and runs one due job. Returns None when nothing is due.
        """
        with get_db_session(self.session_factory) as db:
            job = JobRepository(db).claim_next(now=now)
            if job is None:
                return None
            job_id = job.id
            job_type = job.type
            claimed_at = job.claimed_at
            data = dict(job.data or {})

        logger.info("Processing %s job %s", job_type.value, job_id)

        handler = self.handlers.get(job_type)
        try:
            if handler is None:
                raise BookingEngineError(f"No handler registered for job type {job_type.value}")
            with self.session_factory() as db:
                result = handler(db, data)
        except BookingEngineError as exc:
            logger.warning("%s job %s failed: %s", job_type.value, job_id, exc)
            return self._record_failure(job_id, claimed_at, str(exc) or type(exc).__name__, now)
        except Exception as exc:
            logger.exception("%s job %s raised unexpectedly", job_type.value, job_id)
            return self._record_failure(job_id, claimed_at, f"{type(exc).__name__}: {exc}", now)

        with get_db_session(self.session_factory) as db:
            repository = JobRepository(db)
            job = repository.lock_claimed(job_id, claimed_at)
            if job is None:
                return self._lease_lost(db, job_id)
            repository.mark_completed(job, result)
            processed = self._snapshot(job)

        logger.info("%s job %s completed", job_type.value, job_id)
        return processed

    def process_batch(self, limit: int = config.WORKER_BATCH_SIZE) -> int:
        processed = 0
        while processed < limit:
            if self.process_next() is None:
                break
            processed += 1
        return processed

    def reclaim_stale(self, now: datetime | None = None) -> int:
        """
        Jobs stuck in processing past the lease belong to a worker that died.
        Each counts as one failed attempt.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.lease_seconds)
        exhausted: list[tuple[JobType, dict]] = []

        with get_db_session(self.session_factory) as db:
            repository = JobRepository(db)
            stale = repository.list_stale(cutoff)
            for job in stale:
                logger.warning("Reclaiming %s job %s after lease expiry", job.type.value, job.id)
                if self._apply_failure(repository, job, LEASE_EXPIRED_MESSAGE, now):
                    exhausted.append((job.type, dict(job.data or {})))
            reclaimed = len(stale)

        for job_type, data in exhausted:
            self._run_exhaustion_hook(job_type, data, LEASE_EXPIRED_MESSAGE)
        return reclaimed

    def _record_failure(
        self,
        job_id: str,
        claimed_at: datetime | None,
        error_message: str,
        now: datetime | None,
    ) -> ProcessedJob:
        with get_db_session(self.session_factory) as db:
            repository = JobRepository(db)
            job = repository.lock_claimed(job_id, claimed_at)
            if job is None:
                return self._lease_lost(db, job_id)
            exhausted = self._apply_failure(repository, job, error_message, now)
            processed = self._snapshot(job)
            data = dict(job.data or {})

        if exhausted:
            self._run_exhaustion_hook(processed.job_type, data, error_message)
        return processed

    def _apply_failure(
        self,
        repository: JobRepository,
        job: Job,
        error_message: str,
        now: datetime | None,
    ) -> bool:
        previous_count = job.execution_count
        if is_exhausted(previous_count + 1, self.max_attempts):
            repository.mark_failed(job, error_message)
            logger.error(
                "%s job %s failed permanently after %s attempts: %s",
                job.type.value,
                job.id,
                job.execution_count,
                error_message,
            )
            return True

        next_retry_at = calculate_next_retry(
            previous_count,
            self.base_interval_ms,
            self.max_interval_ms,
            now=now,
        )
        repository.schedule_retry(job, error_message, next_retry_at)
        logger.info(
            "%s job %s scheduled for retry %s at %s",
            job.type.value,
            job.id,
            job.execution_count,
            next_retry_at.isoformat(),
        )
        return False

    def _lease_lost(self, db: Session, job_id: str) -> ProcessedJob:
        job = db.get(Job, job_id, populate_existing=True)
        logger.warning(
            "Lease lost for %s job %s; leaving it %s",
            job.type.value,
            job.id,
            job.status.value,
        )
        return self._snapshot(job, lease_lost=True)

    def _run_exhaustion_hook(self, job_type: JobType, data: dict, error_message: str) -> None:
        hook = self.exhaustion_hooks.get(job_type)
        if hook is None:
            return
        try:
            with get_db_session(self.session_factory) as db:
                hook(db, data, error_message)
        except Exception:
            logger.exception("Exhaustion hook for %s job failed", job_type.value)

    @staticmethod
    def _snapshot(job: Job, lease_lost: bool = False) -> ProcessedJob:
        return ProcessedJob(
            job_id=job.id,
            job_type=job.type,
            status=job.status,
            execution_count=job.execution_count,
            error_message=job.error_message,
            lease_lost=lease_lost,
        )
