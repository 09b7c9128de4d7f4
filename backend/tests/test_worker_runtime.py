"""
Tests for the worker runtime: per-queue pools, outcomes and graceful shutdown.
"""

import asyncio
import logging
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from adpulse.config import Settings
from adpulse.errors import PayloadValidationError, TransientError
from adpulse.jobs.handlers import JOB_HANDLERS, JobContext, resolve_job_handler
from adpulse.jobs.runtime import WorkerRuntime
from adpulse.models import QueueJob
from adpulse.services import job_service
from adpulse.services.rate_limiter import SlidingWindowLimiter
from adpulse.services.recommendation_service import GenerationSummary


def _context(session_factory, generate=None, sync_connection=None):
    recommendation_service = MagicMock()
    recommendation_service.generate = generate or AsyncMock(
        side_effect=lambda account_id, **kwargs: GenerationSummary(account_id=account_id, created=2)
    )
    sync_service = MagicMock()
    sync_service.sync_connection = sync_connection or AsyncMock()
    return JobContext(session_factory=session_factory, sync_service=sync_service, recommendation_service=recommendation_service)


def _settings():
    return Settings(worker_poll_interval_seconds=0.01, worker_shutdown_timeout_seconds=0.1)


async def _enqueue(session_factory, queue, key, payload):
    async with session_factory() as db:
        job, _ = await job_service.enqueue(db, queue, queue, payload, key)
        await db.commit()
        return job


async def _job(session_factory, job_id):
    async with session_factory() as db:
        return await db.get(QueueJob, job_id)


def test_sliding_window_limiter():
    now = [0.0]
    limiter = SlidingWindowLimiter(2, 60, clock=lambda: now[0])
    limiter.record()
    now[0] = 10
    limiter.record()
    assert limiter.wait_time() == 50
    now[0] = 60
    assert limiter.wait_time() == 0
    assert SlidingWindowLimiter(None, 60).wait_time() == 0


def test_handler_registry():
    assert set(JOB_HANDLERS) == {"entity-sync", "insights-sync", "recommendations"}
    with pytest.raises(ValueError, match="No handler"):
        resolve_job_handler("send-email")


@pytest.mark.anyio
async def test_successful_job_is_completed_with_result(session_factory):
    account_id = uuid.uuid4()
    job = await _enqueue(session_factory, "recommendations", "rec-1", {"account_id": str(account_id)})
    ctx = _context(session_factory)
    runtime = WorkerRuntime(ctx, queues=["recommendations"], settings=_settings())

    task = await runtime.dispatch_once("recommendations")
    await task

    stored = await _job(session_factory, job.id)
    assert stored.status == "completed"
    assert stored.result["created"] == 2
    ctx.recommendation_service.generate.assert_awaited_once()
    assert await runtime.dispatch_once("recommendations") is None


@pytest.mark.anyio
async def test_failed_job_is_rescheduled_or_failed(session_factory):
    retry = await _enqueue(session_factory, "recommendations", "rec-retry", {"account_id": str(uuid.uuid4())})
    ctx = _context(session_factory, generate=AsyncMock(side_effect=TransientError("db timeout")))
    runtime = WorkerRuntime(ctx, queues=["recommendations"], settings=_settings())
    await (await runtime.dispatch_once("recommendations"))

    stored = await _job(session_factory, retry.id)
    assert stored.status == "pending"
    assert stored.attempts == 1
    assert "db timeout" in stored.last_error

    final = await _enqueue(session_factory, "recommendations", "rec-final", {"account_id": str(uuid.uuid4())})
    ctx.recommendation_service.generate = AsyncMock(side_effect=PayloadValidationError("bad payload"))
    await (await runtime.dispatch_once("recommendations"))
    assert (await _job(session_factory, final.id)).status == "failed"


@pytest.mark.anyio
async def test_pool_never_exceeds_queue_concurrency(session_factory):
    gate = asyncio.Event()

    async def blocked(connection_id, sync_type="full"):
        await gate.wait()
        return MagicMock(status="success", to_dict=lambda: {"status": "success"})

    for n in range(3):
        await _enqueue(session_factory, "entity-sync", f"sync-{n}", {"connection_id": str(uuid.uuid4())})
    runtime = WorkerRuntime(_context(session_factory, sync_connection=blocked), queues=["entity-sync"], settings=_settings())

    first = await runtime.dispatch_once("entity-sync")
    second = await runtime.dispatch_once("entity-sync")
    assert first is not None and second is not None
    assert await runtime.dispatch_once("entity-sync") is None
    assert runtime.status()["entity-sync"]["active"] == 2

    gate.set()
    await asyncio.gather(first, second)
    async with session_factory() as db:
        statuses = sorted(j.status for j in (await db.execute(select(QueueJob))).scalars().all())
    assert statuses == ["completed", "completed", "pending"]


@pytest.mark.anyio
async def test_stop_returns_interrupted_jobs_to_queue(session_factory):
    started = asyncio.Event()

    async def forever(connection_id, sync_type="full"):
        started.set()
        await asyncio.Event().wait()

    job = await _enqueue(session_factory, "entity-sync", "sync-forever", {"connection_id": str(uuid.uuid4())})
    runtime = WorkerRuntime(_context(session_factory, sync_connection=forever), queues=["entity-sync"], settings=_settings())

    await runtime.start()
    await asyncio.wait_for(started.wait(), timeout=5)
    assert len(runtime.in_flight()) == 1

    await runtime.stop(timeout=0.05)
    assert runtime.running is False
    stored = await _job(session_factory, job.id)
    assert stored.status == "pending"
    assert stored.attempts == 0


@pytest.mark.anyio
async def test_start_and_stop_twice_only_warn(session_factory, caplog):
    runtime = WorkerRuntime(_context(session_factory), queues=["recommendations"], settings=_settings())
    with caplog.at_level(logging.WARNING, logger="adpulse.jobs.runtime"):
        await runtime.stop()
        await runtime.start()
        await runtime.start()
        await runtime.stop()
    assert "not running" in caplog.text
    assert "already running" in caplog.text
