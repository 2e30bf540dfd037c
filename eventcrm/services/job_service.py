"""Job service - background job scheduling and processing state."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.db.enums import JobStatus, JobType
from eventcrm.db.models import Job
from eventcrm.db.session import begin_write
from eventcrm.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


# Retry backoff: 30s, 2m, 8m ...
RETRY_BASE_SECONDS = 30


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    *,
    max_attempts: int | None = None,
    commit: bool = True,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle).
    With commit=False the job is only flushed, so it lands atomically with
    whatever else the caller's transaction writes.
    """
    job = Job(
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or utcnow(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job


def get_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    On Postgres the rows are locked with SKIP LOCKED so several workers can
    poll concurrently without picking the same job.
    """
    query = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= utcnow(),
        )
        .order_by(Job.run_at)
        .limit(limit)
    )
    if db.get_bind().dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    return query.all()


def get_job_by_idempotency_key(db: Session, key: str) -> Job | None:
    return db.query(Job).filter(Job.idempotency_key == key).first()


def list_jobs(
    db: Session,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs with optional filters."""
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status.value)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    return query.order_by(Job.created_at.desc()).limit(limit).all()


def _lease_cutoff() -> datetime:
    return utcnow() - timedelta(seconds=settings.JOB_LEASE_SECONDS)


def is_lease_expired(job: Job) -> bool:
    """A running job whose worker stopped heartbeating (crashed or killed)."""
    if job.status != JobStatus.RUNNING.value:
        return False
    if job.heartbeat_at is None:
        return True
    return ensure_utc(job.heartbeat_at) < _lease_cutoff()


def mark_job_running(db: Session, job: Job, *, commit: bool = True) -> Job:
    """Start an attempt and take the lease."""
    job.status = JobStatus.RUNNING.value
    job.attempts += 1
    job.heartbeat_at = utcnow()
    if commit:
        db.commit()
    else:
        db.flush()
    return job


def touch_job(db: Session, job_id: UUID) -> None:
    """Extend a running job's lease."""
    begin_write(db)
    db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
        .values(heartbeat_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def claim_next_job(db: Session) -> Job | None:
    """
    Move the next due job to running and return it, or None.

    Jobs are claimed one at a time so a long campaign send never holds
    short jobs behind it. A running job whose lease expired is claimed again;
    one that has already used all its attempts is failed instead.
    """
    while True:
        begin_write(db)
        query = (
            db.query(Job)
            .filter(
                or_(
                    and_(
                        Job.status == JobStatus.PENDING.value,
                        Job.run_at <= utcnow(),
                    ),
                    and_(
                        Job.status == JobStatus.RUNNING.value,
                        or_(Job.heartbeat_at.is_(None), Job.heartbeat_at < _lease_cutoff()),
                    ),
                )
            )
            .order_by(Job.run_at)
            .limit(1)
        )
        if db.get_bind().dialect.name == "postgresql":
            query = query.with_for_update(skip_locked=True)
        job = query.first()
        if job is None:
            db.rollback()
            return None

        if job.status == JobStatus.RUNNING.value:
            if job.attempts >= job.max_attempts:
                logger.error("Job %s lease expired on its last attempt, failing", job.id)
                job.status = JobStatus.FAILED.value
                job.last_error = "Worker lease expired"
                db.commit()
                continue
            logger.warning(
                "Reclaiming job %s after lease expired (attempt %s)", job.id, job.attempts
            )
        return mark_job_running(db, job)



def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    begin_write(db)
    job.status = JobStatus.COMPLETED.value
    job.completed_at = utcnow()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending with exponential backoff.
    """
    begin_write(db)
    job.last_error = error[:2000]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        delay = RETRY_BASE_SECONDS * (4 ** max(job.attempts - 1, 0))
        job.run_at = utcnow() + timedelta(seconds=delay)
    else:
        job.status = JobStatus.FAILED.value
    db.commit()
    db.refresh(job)
    return job


def requeue_job(db: Session, job: Job, *, commit: bool = True) -> Job:
    """Put a failed or abandoned job back in the queue with fresh attempts."""
    job.status = JobStatus.PENDING.value
    job.attempts = 0
    job.last_error = None
    job.run_at = utcnow()
    job.completed_at = None
    job.heartbeat_at = None
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    return job
