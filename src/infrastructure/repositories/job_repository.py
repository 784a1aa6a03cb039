# src/infrastructure/repositories/job_repository.py

from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import delete, or_, select, update

from src.infrastructure.db.models import Job
from src.domain.state_machine import JobStateMachine, JobStatus, JobType


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobRepository:

    def __init__(self, db: Session):
        self.db = db

    def create_job(
        self,
        job_type: JobType,
        data: dict,
        priority: int = 0,
    ) -> Job:
        job = Job(
            type=job_type,
            status=JobStatus.PENDING,
            data=dict(data),
            priority=priority,
            execution_count=0,
        )
        self.db.add(job)
        self.db.flush()
        return job

    def get_by_id(self, job_id: str) -> Job | None:
        stmt = select(Job).where(Job.id == job_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 50,
    ) -> list[Job]:
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        if job_type is not None:
            stmt = stmt.where(Job.type == job_type)
        return list(self.db.execute(stmt).scalars().all())

    def has_unfinished(self, job_type: JobType) -> bool:
        stmt = (
            select(Job.id)
            .where(Job.type == job_type)
            .where(Job.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]))
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def claim_next(self, now: datetime | None = None, candidates: int = 10) -> Job | None:
        """
        Claims the next due job.

        Candidates are read without locks; the claim itself is a conditional
        UPDATE guarded on status = pending, so when two workers race for
        the same row exactly one sees rowcount == 1.
        """
        now = now or _now()
        candidate_ids = list(
            self.db.execute(
                select(Job.id)
                .where(Job.status == JobStatus.PENDING)
                .where(or_(Job.next_retry_at.is_(None), Job.next_retry_at <= now))
                .order_by(Job.priority.desc(), Job.created_at.asc())
                .limit(candidates)
            ).scalars().all()
        )

        for job_id in candidate_ids:
            result = self.db.execute(
                update(Job)
                .where(Job.id == job_id)
                .where(Job.status == JobStatus.PENDING)
                .values(status=JobStatus.PROCESSING, claimed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return self.db.get(Job, job_id, populate_existing=True)

        return None

    def lock_claimed(self, job_id: str, claimed_at: datetime | None) -> Job | None:
        """
        Locks the job only while it is still held by the given claim.
        Returns None once the lease was reclaimed, even if the job was
        claimed again since.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .where(Job.status == JobStatus.PROCESSING)
            .where(Job.claimed_at == claimed_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_stale(self, claimed_before: datetime) -> list[Job]:
        stmt = (
            select(Job)
            .where(Job.status == JobStatus.PROCESSING)
            .where(Job.claimed_at < claimed_before)
            .order_by(Job.claimed_at)
            .with_for_update(skip_locked=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_completed(self, job: Job, result: dict | None) -> None:
        JobStateMachine.validate_transition(job.status, JobStatus.COMPLETED)
        now = _now()
        job.status = JobStatus.COMPLETED
        job.result = result
        job.error_message = None
        job.completed_at = now
        job.claimed_at = None

    def schedule_retry(self, job: Job, error_message: str, next_retry_at: datetime) -> None:
        JobStateMachine.validate_transition(job.status, JobStatus.PENDING)
        job.status = JobStatus.PENDING
        job.execution_count += 1
        job.error_message = error_message
        job.next_retry_at = next_retry_at
        job.claimed_at = None

    def mark_failed(self, job: Job, error_message: str) -> None:
        JobStateMachine.validate_transition(job.status, JobStatus.FAILED)
        job.status = JobStatus.FAILED
        job.execution_count += 1
        job.error_message = error_message
        job.completed_at = _now()
        job.claimed_at = None

    def cleanup_old(self, finished_before: datetime) -> int:
        result = self.db.execute(
            delete(Job)
            .where(Job.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]))
            .where(Job.completed_at < finished_before)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
