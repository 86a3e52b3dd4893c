"""Job service - business logic for background job scheduling and processing."""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import Job
from app.db.enums import JobStatus, JobType

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def schedule_job(
    db: Session,
    org_id: UUID,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    *,
    commit: bool = True,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle).
    With commit=False the job is only flushed, so it lands in the caller's
    unit of work.
    """
    job = Job(
        organization_id=org_id,
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or _now_utc(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    if not commit:
        db.flush()
        return job
    db.commit()
    db.refresh(job)
    return job


def schedule_job_once(
    db: Session,
    org_id: UUID,
    job_type: JobType,
    payload: dict,
    idempotency_key: str,
    run_at: datetime | None = None,
) -> Job | None:
    """Schedule a job unless one with the same idempotency key exists. Returns None if skipped."""
    try:
        return schedule_job(
            db,
            org_id=org_id,
            job_type=job_type,
            payload=payload,
            run_at=run_at,
            idempotency_key=idempotency_key,
        )
    except IntegrityError:
        db.rollback()
        logger.info("Skipping duplicate %s job (key=%s)", job_type.value, idempotency_key)
        return None


def has_active_job(db: Session, job_type: JobType, channel_id: UUID) -> bool:
    """True if a pending or running job of this type already targets the channel."""
    return (
        db.query(Job.id)
        .filter(
            Job.job_type == job_type.value,
            Job.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
            Job.payload["channel_id"].as_string() == str(channel_id),
        )
        .first()
        is not None
    )


def get_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    now = _now_utc()
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
        .all()
    )


def mark_job_running(db: Session, job: Job) -> Job:
    """Mark a job as running (increment attempts)."""
    job.status = JobStatus.RUNNING.value
    job.attempts += 1
    db.commit()
    db.refresh(job)
    return job


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = _now_utc()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry.
    """
    job.last_error = error
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
    db.commit()
    db.refresh(job)
    return job
