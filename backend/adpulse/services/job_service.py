"""
Job Service: durable job queue on the queue_jobs table.

Jobs are rows: enqueue inserts (deduplicated by job_key), the worker claims
the oldest due pending row of a queue, and completion or failure moves it on.
Failed attempts are retried with exponential backoff until max_attempts.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.errors import LimiterRejectedError, RateLimitedError, SyncError
from adpulse.jobs.queues import get_queue
from adpulse.models import JobStatus, QueueJob

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class JobDescriptor:
    queue: str
    name: str
    payload: dict = field(default_factory=dict)
    job_key: Optional[str] = None
    max_attempts: Optional[int] = None
    run_at: Optional[datetime] = None


def _dialect_insert(db: AsyncSession):
    if db.bind is not None and db.bind.dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


async def get_job_by_key(db: AsyncSession, job_key: str) -> Optional[QueueJob]:
    result = await db.execute(select(QueueJob).where(QueueJob.job_key == job_key))
    return result.scalar_one_or_none()


async def enqueue(
    db: AsyncSession,
    queue: str,
    name: str,
    payload: dict,
    job_key: Optional[str] = None,
    max_attempts: Optional[int] = None,
    run_at: Optional[datetime] = None,
) -> tuple[QueueJob, bool]:
    """
    Add a pending job. Returns (job, created).
    A job whose key already exists is not added again; the existing row is returned.
    """
    config = get_queue(queue)
    key = job_key or f"{name}-{uuid.uuid4()}"

    existing = await get_job_by_key(db, key)
    if existing is not None:
        logger.debug(f"Job {key} already queued ({existing.status}); skipping")
        return existing, False

    insert = _dialect_insert(db)
    stmt = insert(QueueJob).values(
        id=uuid.uuid4(),
        queue=queue,
        name=name,
        job_key=key,
        payload=payload,
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=max_attempts or config.max_attempts,
        stalled_count=0,
        run_at=run_at or _utcnow(),
        created_at=_utcnow(),
    ).on_conflict_do_nothing(index_elements=["job_key"])
    result = await db.execute(stmt)
    job = await get_job_by_key(db, key)
    if not result.rowcount:
        # another producer inserted the same key first
        return job, False
    logger.info(f"Enqueued {queue}/{name} ({key})")
    return job, True


async def enqueue_bulk(db: AsyncSession, descriptors: list[JobDescriptor]) -> int:
    """Enqueue each descriptor; returns how many new rows were added."""
    added = 0
    for d in descriptors:
        _, created = await enqueue(db, d.queue, d.name, d.payload, d.job_key, d.max_attempts, d.run_at)
        if created:
            added += 1
    return added


async def claim_next(db: AsyncSession, queue: str, now: Optional[datetime] = None) -> Optional[QueueJob]:
    """Mark the oldest due pending job of `queue` running and return it."""
    now = now or _utcnow()
    query = (
        select(QueueJob)
        .where(
            QueueJob.queue == queue,
            QueueJob.status == JobStatus.PENDING.value,
            QueueJob.run_at <= now,
        )
        .order_by(QueueJob.run_at, QueueJob.created_at)
        .limit(1)
    )
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    job = (await db.execute(query)).scalar_one_or_none()
    if job is None:
        return None
    job.status = JobStatus.RUNNING.value
    job.attempts += 1
    job.locked_at = now
    await db.flush()
    return job


async def complete(db: AsyncSession, job: QueueJob, result: Optional[dict] = None) -> QueueJob:
    job.status = JobStatus.COMPLETED.value
    job.completed_at = _utcnow()
    job.locked_at = None
    job.last_error = None
    job.result = result
    await db.flush()
    return job


def retry_delay(job: QueueJob, error: BaseException) -> float:
    delay = get_queue(job.queue).backoff(job.attempts)
    if isinstance(error, RateLimitedError) and error.retry_after:
        delay = max(delay, error.retry_after)
    return delay


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, SyncError):
        return error.retryable
    return True


async def fail(db: AsyncSession, job: QueueJob, error: BaseException, now: Optional[datetime] = None) -> QueueJob:
    """
    Record a failed attempt. Retryable errors with attempts left go back to
    pending after the backoff delay; anything else fails the job. Local
    limiter rejections are deferred instead.
    """
    now = now or _utcnow()
    job.last_error = f"{type(error).__name__}: {error}"
    job.locked_at = None
    if isinstance(error, LimiterRejectedError):
        return await defer(db, job, error, now)
    if is_retryable(error) and job.attempts < job.max_attempts:
        delay = retry_delay(job, error)
        job.status = JobStatus.PENDING.value
        job.run_at = now + timedelta(seconds=delay)
        logger.warning(
            f"Job {job.job_key} attempt {job.attempts}/{job.max_attempts} failed, "
            f"retrying in {delay:.0f}s: {error}"
        )
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        logger.error(f"Job {job.job_key} failed after {job.attempts} attempt(s): {error}")
    await db.flush()
    return job


async def defer(db: AsyncSession, job: QueueJob, error: LimiterRejectedError, now: Optional[datetime] = None) -> QueueJob:
    """
    Put back a job the local limiter turned away. The attempt is given back,
    so waiting for a permit never exhausts max_attempts.
    """
    now = now or _utcnow()
    delay = error.retry_after or get_queue(job.queue).backoff(1)
    job.status = JobStatus.PENDING.value
    job.attempts = max(job.attempts - 1, 0)
    job.locked_at = None
    job.run_at = now + timedelta(seconds=delay)
    logger.info(f"Job {job.job_key} deferred {delay:.0f}s: {error}")
    await db.flush()
    return job


async def release(db: AsyncSession, job: QueueJob) -> QueueJob:
    """Return an interrupted job to the queue without spending an attempt."""
    job.status = JobStatus.PENDING.value
    job.attempts = max(job.attempts - 1, 0)
    job.locked_at = None
    await db.flush()
    return job


async def recover_stalled(
    db: AsyncSession,
    stall_timeout_seconds: int,
    max_stalled_count: int,
    now: Optional[datetime] = None,
) -> int:
    """Running jobs whose lock is older than the timeout are requeued, or failed past max_stalled_count."""
    now = now or _utcnow()
    cutoff = now - timedelta(seconds=stall_timeout_seconds)
    result = await db.execute(
        select(QueueJob).where(
            QueueJob.status == JobStatus.RUNNING.value,
            QueueJob.locked_at < cutoff,
        )
    )
    stalled = list(result.scalars().all())
    for job in stalled:
        job.stalled_count += 1
        job.locked_at = None
        if job.stalled_count > max_stalled_count:
            job.status = JobStatus.FAILED.value
            job.last_error = "job stalled"
            job.completed_at = now
            logger.error(f"Job {job.job_key} stalled {job.stalled_count} times; failing")
        else:
            job.status = JobStatus.PENDING.value
            job.run_at = now + timedelta(seconds=get_queue(job.queue).backoff(job.attempts))
            logger.warning(f"Job {job.job_key} stalled; requeued")
    await db.flush()
    return len(stalled)


async def list_jobs(
    db: AsyncSession,
    queue: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[QueueJob]:
    query = select(QueueJob)
    if queue:
        query = query.where(QueueJob.queue == queue)
    if status:
        query = query.where(QueueJob.status == status)
    result = await db.execute(query.order_by(QueueJob.created_at.desc()).limit(limit))
    return list(result.scalars().all())
