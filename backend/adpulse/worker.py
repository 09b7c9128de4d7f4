"""
Background worker: runs the queue pools and (optionally) the cron scheduler.

Usage:
    python -m adpulse.worker
    python -m adpulse.worker --queues entity-sync insights-sync --no-scheduler
"""

import argparse
import asyncio
import logging
import signal

from adpulse.config import get_settings
from adpulse.database import init_db
from adpulse.jobs.handlers import build_job_context
from adpulse.jobs.queues import QUEUES
from adpulse.jobs.runtime import WorkerRuntime
from adpulse.jobs.scheduler import JobScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def run(queues: list[str], with_scheduler: bool):
    settings = get_settings()
    await init_db()

    runtime = WorkerRuntime(build_job_context(settings=settings), queues=queues, settings=settings)
    scheduler = JobScheduler(settings=settings) if with_scheduler and settings.scheduler_enabled else None

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await runtime.start()
    if scheduler:
        scheduler.start()
        for family, when in scheduler.next_fire_times().items():
            logger.info(f"Next {family}: {when}")

    await stop.wait()
    logger.info("Shutdown requested")
    if scheduler:
        scheduler.stop()
    await runtime.stop()


def main():
    parser = argparse.ArgumentParser(description="Adpulse background worker")
    parser.add_argument("--queues", nargs="+", choices=list(QUEUES), default=list(QUEUES))
    parser.add_argument("--no-scheduler", action="store_true", help="Only process jobs; do not schedule new ones")
    args = parser.parse_args()
    asyncio.run(run(args.queues, not args.no_scheduler))


if __name__ == "__main__":
    main()
