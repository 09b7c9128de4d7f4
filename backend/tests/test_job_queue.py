"""
Tests for the durable job queue: dedup by key, claiming, retries and stall recovery.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from adpulse.errors import AuthExpiredError, LimiterRejectedError, RateLimitedError, TransientError
from adpulse.jobs.queues import QUEUES, get_queue
from adpulse.models import QueueJob, _utcnow
from adpulse.services import job_service
from adpulse.services.job_service import JobDescriptor


async def _enqueue(session_factory, key="entity-sync-c1-2024-01-01", queue="entity-sync", **kwargs):
    async with session_factory() as db:
        job, created = await job_service.enqueue(db, queue, queue, {"connection_id": "c1"}, key, **kwargs)
        await db.commit()
        return job, created


async def _claim(session_factory, queue="entity-sync", now=None):
    async with session_factory() as db:
        job = await job_service.claim_next(db, queue, now=now)
        await db.commit()
        return job


async def _fail(session_factory, job_id, error, now=None):
    async with session_factory() as db:
        job = await db.get(QueueJob, job_id)
        await job_service.fail(db, job, error, now=now)
        await db.commit()
        return job


def test_backoff_is_exponential():
    config = get_queue("entity-sync")
    assert [config.backoff(n) for n in (1, 2, 3)] == [2, 4, 8]


def test_unknown_queue():
    with pytest.raises(ValueError, match="Unknown queue"):
        get_queue("emails")


def test_queue_concurrency_defaults():
    assert QUEUES["entity-sync"].concurrency == 2
    assert QUEUES["insights-sync"].concurrency == 3
    assert QUEUES["recommendations"].limit_jobs is None


@pytest.mark.anyio
async def test_same_key_is_enqueued_once(session_factory):
    first, created = await _enqueue(session_factory)
    second, created_again = await _enqueue(session_factory)

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert first.max_attempts == 3
    async with session_factory() as db:
        assert (await db.execute(select(func.count()).select_from(QueueJob))).scalar_one() == 1


@pytest.mark.anyio
async def test_enqueue_bulk_counts_new_rows(session_factory):
    descriptors = [
        JobDescriptor(queue="recommendations", name="recommendations", payload={"account_id": "a"}, job_key="rec-a"),
        JobDescriptor(queue="recommendations", name="recommendations", payload={"account_id": "a"}, job_key="rec-a"),
        JobDescriptor(queue="recommendations", name="recommendations", payload={"account_id": "b"}),
    ]
    async with session_factory() as db:
        assert await job_service.enqueue_bulk(db, descriptors) == 2
        await db.commit()


@pytest.mark.anyio
async def test_completed_key_blocks_reenqueue(session_factory):
    job, _ = await _enqueue(session_factory)
    claimed = await _claim(session_factory)
    async with session_factory() as db:
        await job_service.complete(db, await db.get(QueueJob, claimed.id), {"status": "success"})
        await db.commit()

    again, created = await _enqueue(session_factory)
    assert created is False
    assert again.status == "completed"
    assert await _claim(session_factory) is None


@pytest.mark.anyio
async def test_claim_respects_run_at_and_queue(session_factory):
    await _enqueue(session_factory, key="later", run_at=_utcnow() + timedelta(minutes=5))
    await _enqueue(session_factory, key="recs", queue="recommendations")

    assert await _claim(session_factory) is None
    claimed = await _claim(session_factory, now=_utcnow() + timedelta(minutes=6))
    assert claimed.job_key == "later"
    assert claimed.status == "running"
    assert claimed.attempts == 1
    assert claimed.locked_at is not None


@pytest.mark.anyio
async def test_retryable_failure_backs_off_exponentially(session_factory):
    await _enqueue(session_factory)
    now = _utcnow()

    claimed = await _claim(session_factory, now=now)
    job = await _fail(session_factory, claimed.id, TransientError("timeout"), now=now)
    assert job.status == "pending"
    assert job.run_at == now + timedelta(seconds=2)
    assert "timeout" in job.last_error

    claimed = await _claim(session_factory, now=now + timedelta(seconds=3))
    job = await _fail(session_factory, claimed.id, TransientError("timeout"), now=now)
    assert job.attempts == 2
    assert job.run_at == now + timedelta(seconds=4)

    claimed = await _claim(session_factory, now=now + timedelta(seconds=10))
    job = await _fail(session_factory, claimed.id, TransientError("timeout"), now=now)
    assert job.status == "failed"
    assert job.attempts == 3


@pytest.mark.anyio
async def test_rate_limited_waits_at_least_retry_after(session_factory):
    await _enqueue(session_factory)
    now = _utcnow()
    claimed = await _claim(session_factory, now=now)
    job = await _fail(session_factory, claimed.id, RateLimitedError("slow down", retry_after=60), now=now)
    assert job.status == "pending"
    assert job.run_at == now + timedelta(seconds=60)


@pytest.mark.anyio
async def test_limiter_rejection_defers_without_spending_attempts(session_factory):
    await _enqueue(session_factory, max_attempts=2)
    now = _utcnow()
    rejection = LimiterRejectedError("2 meta sync jobs already running", retry_after=30)

    # more rejections than max_attempts never fail the job
    for round_number in range(5):
        at = now + timedelta(minutes=round_number)
        claimed = await _claim(session_factory, now=at)
        assert claimed is not None
        job = await _fail(session_factory, claimed.id, rejection, now=at)
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.run_at == at + timedelta(seconds=30)
    assert "already running" in job.last_error

    claimed = await _claim(session_factory, now=now + timedelta(hours=1))
    job = await _fail(session_factory, claimed.id, TransientError("timeout"), now=now)
    assert job.attempts == 1
    assert job.status == "pending"


@pytest.mark.anyio
async def test_non_retryable_error_fails_immediately(session_factory):
    await _enqueue(session_factory)
    claimed = await _claim(session_factory)
    job = await _fail(session_factory, claimed.id, AuthExpiredError("token expired"))
    assert job.status == "failed"
    assert job.attempts == 1
    assert job.completed_at is not None


@pytest.mark.anyio
async def test_release_returns_the_attempt(session_factory):
    await _enqueue(session_factory)
    claimed = await _claim(session_factory)
    async with session_factory() as db:
        job = await job_service.release(db, await db.get(QueueJob, claimed.id))
        await db.commit()
    assert job.status == "pending"
    assert job.attempts == 0


@pytest.mark.anyio
async def test_stalled_jobs_are_requeued_then_failed(session_factory):
    await _enqueue(session_factory)
    start = _utcnow()

    claimed = await _claim(session_factory, now=start)
    async with session_factory() as db:
        assert await job_service.recover_stalled(db, 600, 1, now=start + timedelta(seconds=300)) == 0
        assert await job_service.recover_stalled(db, 600, 1, now=start + timedelta(seconds=700)) == 1
        await db.commit()
        job = await db.get(QueueJob, claimed.id)
        assert job.status == "pending"
        assert job.stalled_count == 1

    later = start + timedelta(hours=1)
    await _claim(session_factory, now=later)
    async with session_factory() as db:
        await job_service.recover_stalled(db, 600, 1, now=later + timedelta(seconds=700))
        await db.commit()
        job = await db.get(QueueJob, claimed.id)
        assert job.status == "failed"
        assert job.last_error == "job stalled"


@pytest.mark.anyio
async def test_list_jobs_filters(session_factory):
    await _enqueue(session_factory, key="a")
    await _enqueue(session_factory, key="b", queue="recommendations")
    async with session_factory() as db:
        assert len(await job_service.list_jobs(db)) == 2
        assert [j.job_key for j in await job_service.list_jobs(db, queue="recommendations")] == ["b"]
        assert await job_service.list_jobs(db, status="failed") == []
