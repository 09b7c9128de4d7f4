"""
Worker runtime: one polling pool per queue.

Each pool claims due jobs from the queue_jobs table while it has free
slots (asyncio.Semaphore of the queue's concurrency) and its sliding-window
limiter allows another start. Pools are independent: a saturated
insights-sync pool never delays entity-sync jobs.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from adpulse.config import Settings, get_settings
from adpulse.jobs.handlers import JobContext, resolve_job_handler
from adpulse.jobs.queues import QUEUES, QueueConfig
from adpulse.models import QueueJob
from adpulse.services import job_service
from adpulse.services.rate_limiter import SlidingWindowLimiter

logger = logging.getLogger(__name__)


@dataclass
class ClaimedJob:
    id: uuid.UUID
    queue: str
    name: str
    job_key: str
    payload: dict
    attempts: int


@dataclass
class QueuePool:
    config: QueueConfig
    semaphore: asyncio.Semaphore
    limiter: SlidingWindowLimiter
    tasks: set = field(default_factory=set)

    @property
    def active(self) -> int:
        return len(self.tasks)


class WorkerRuntime:
    def __init__(
        self,
        ctx: JobContext,
        queues: Optional[list[str]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ctx = ctx
        self.settings = settings or get_settings()
        names = queues or list(QUEUES)
        self.pools: dict[str, QueuePool] = {
            name: QueuePool(
                config=QUEUES[name],
                semaphore=asyncio.Semaphore(QUEUES[name].concurrency),
                limiter=SlidingWindowLimiter(QUEUES[name].limit_jobs, QUEUES[name].limit_period_seconds, clock),
            )
            for name in names
        }
        self._loops: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self.running = False

    # ── Job execution ─────────────────────────────────────────────────

    async def _claim(self, queue: str) -> Optional[ClaimedJob]:
        async with self.ctx.session_factory() as db:
            async with db.begin():
                job = await job_service.claim_next(db, queue)
                if job is None:
                    return None
                return ClaimedJob(job.id, job.queue, job.name, job.job_key, dict(job.payload or {}), job.attempts)

    async def _settle(self, job_id: uuid.UUID, outcome: Callable):
        async with self.ctx.session_factory() as db:
            async with db.begin():
                job = await db.get(QueueJob, job_id)
                if job is not None:
                    await outcome(db, job)

    async def _execute(self, pool: QueuePool, claimed: ClaimedJob):
        logger.info(f"[{claimed.queue}] running {claimed.name} ({claimed.job_key}), attempt {claimed.attempts}")
        started = time.monotonic()
        try:
            handler = resolve_job_handler(claimed.name)
            result = await handler(self.ctx, claimed.payload)
        except asyncio.CancelledError:
            await self._settle(claimed.id, job_service.release)
            logger.warning(f"[{claimed.queue}] {claimed.job_key} interrupted; returned to queue")
            raise
        except Exception as e:
            await self._settle(claimed.id, lambda db, job: job_service.fail(db, job, e))
        else:
            await self._settle(claimed.id, lambda db, job: job_service.complete(db, job, result))
            logger.info(f"[{claimed.queue}] {claimed.job_key} completed in {time.monotonic() - started:.1f}s")
        finally:
            pool.semaphore.release()

    async def dispatch_once(self, queue: str) -> Optional[asyncio.Task]:
        """
        Start the next due job of `queue` if the pool has a free slot and the
        throughput limiter allows it. Returns the running task, or None.
        """
        pool = self.pools[queue]
        if pool.semaphore.locked() or pool.limiter.wait_time() > 0:
            return None
        await pool.semaphore.acquire()
        try:
            claimed = await self._claim(queue)
        except Exception:
            pool.semaphore.release()
            raise
        if claimed is None:
            pool.semaphore.release()
            return None
        pool.limiter.record()
        task = asyncio.create_task(self._execute(pool, claimed), name=f"job-{claimed.job_key}")
        pool.tasks.add(task)
        task.add_done_callback(pool.tasks.discard)
        return task

    # ── Loops ─────────────────────────────────────────────────────────

    async def _poll(self, queue: str):
        interval = self.settings.worker_poll_interval_seconds
        pool = self.pools[queue]
        while not self._stopping.is_set():
            try:
                task = await self.dispatch_once(queue)
            except Exception as e:
                logger.error(f"[{queue}] claim failed: {e}", exc_info=True)
                task = None
            if task is not None:
                continue
            delay = interval
            wait = pool.limiter.wait_time()
            if wait > 0:
                delay = min(wait, interval)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _recover_loop(self):
        interval = max(self.settings.job_stall_timeout_seconds / 4, self.settings.worker_poll_interval_seconds)
        while not self._stopping.is_set():
            try:
                async with self.ctx.session_factory() as db:
                    async with db.begin():
                        count = await job_service.recover_stalled(
                            db,
                            self.settings.job_stall_timeout_seconds,
                            self.settings.job_max_stalled_count,
                        )
                if count:
                    logger.warning(f"Recovered {count} stalled job(s)")
            except Exception as e:
                logger.error(f"Stall recovery failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def start(self):
        if self.running:
            logger.warning("Worker runtime already running")
            return
        self._stopping.clear()
        self._loops = [asyncio.create_task(self._poll(name), name=f"poll-{name}") for name in self.pools]
        self._loops.append(asyncio.create_task(self._recover_loop(), name="stall-recovery"))
        self.running = True
        logger.info(
            "Worker runtime started: "
            + ", ".join(f"{p.config.name} x{p.config.concurrency}" for p in self.pools.values())
        )

    def in_flight(self) -> list[asyncio.Task]:
        return [t for pool in self.pools.values() for t in pool.tasks]

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop claiming, give in-flight jobs `timeout` seconds to finish, then
        cancel the rest (cancelled jobs go back to pending).
        """
        if not self.running:
            logger.warning("Worker runtime is not running")
            return
        timeout = self.settings.worker_shutdown_timeout_seconds if timeout is None else timeout
        self._stopping.set()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        pending = self.in_flight()
        if pending:
            logger.info(f"Waiting up to {timeout}s for {len(pending)} job(s)")
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning(f"Cancelled {len(still_running)} job(s) at shutdown")
        self.running = False
        logger.info("Worker runtime stopped")

    def status(self) -> dict:
        return {
            name: {
                "active": pool.active,
                "concurrency": pool.config.concurrency,
                "limiter_wait_seconds": round(pool.limiter.wait_time(), 2),
            }
            for name, pool in self.pools.items()
        }
