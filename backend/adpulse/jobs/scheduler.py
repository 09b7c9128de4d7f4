"""
Job Scheduler: cron patterns to queue jobs.

Four job families, each registered on an APScheduler AsyncIOScheduler with
CronTrigger.from_crontab. On every fire the family's job list is rebuilt
from the current active connections and ad accounts, then enqueued with a
deterministic job key so a second fire in the same period is deduplicated.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adpulse.config import Settings, get_settings
from adpulse.database import async_session, session_scope
from adpulse.jobs.queues import ENTITY_SYNC, INSIGHTS_SYNC, RECOMMENDATIONS
from adpulse.models import AdAccount, ProviderConnection
from adpulse.services.job_service import JobDescriptor, enqueue_bulk

logger = logging.getLogger(__name__)

FULL_INSIGHT_LEVELS = ("account", "campaign", "adset", "ad")
DELTA_INSIGHT_LEVELS = ("campaign", "ad")

FAMILIES = ("entity-sync", "full-insights", "delta-insights", "recommendations")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def half_hour_slot(now: datetime) -> str:
    return f"{now.date().isoformat()}T{now.hour:02d}{'00' if now.minute < 30 else '30'}"


# ══════════════════════════════════════════════════════════════════════
#  JOB DESCRIPTORS: rebuilt from the database on every fire
# ══════════════════════════════════════════════════════════════════════

async def _active_connections(db: AsyncSession) -> list[ProviderConnection]:
    result = await db.execute(select(ProviderConnection).where(ProviderConnection.is_active.is_(True)))
    return list(result.scalars().all())


async def _active_ad_accounts(db: AsyncSession) -> list[AdAccount]:
    result = await db.execute(
        select(AdAccount)
        .join(ProviderConnection, AdAccount.connection_id == ProviderConnection.id)
        .where(ProviderConnection.is_active.is_(True))
        .order_by(AdAccount.created_at)
    )
    return list(result.scalars().all())


async def build_entity_sync_jobs(db: AsyncSession, now: datetime) -> list[JobDescriptor]:
    day = now.date().isoformat()
    return [
        JobDescriptor(
            queue=ENTITY_SYNC,
            name=ENTITY_SYNC,
            payload={"connection_id": str(conn.id), "account_id": str(conn.account_id), "sync_type": "full"},
            job_key=f"entity-sync-{conn.id}-{day}",
        )
        for conn in await _active_connections(db)
    ]


def _insight_jobs(
    ad_accounts: list[AdAccount],
    levels: tuple[str, ...],
    start: date,
    end: date,
    sync_type: str,
    key_for: Callable[[AdAccount, str], str],
) -> list[JobDescriptor]:
    jobs = []
    for ad_account in ad_accounts:
        for level in levels:
            jobs.append(JobDescriptor(
                queue=INSIGHTS_SYNC,
                name=INSIGHTS_SYNC,
                payload={
                    "ad_account_id": str(ad_account.id),
                    "account_id": str(ad_account.account_id),
                    "level": level,
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                    "sync_type": sync_type,
                },
                job_key=key_for(ad_account, level),
            ))
    return jobs


async def build_full_insights_jobs(db: AsyncSession, now: datetime, lookback_days: int = 30) -> list[JobDescriptor]:
    today = now.date()
    return _insight_jobs(
        await _active_ad_accounts(db),
        FULL_INSIGHT_LEVELS,
        today - timedelta(days=lookback_days),
        today,
        "full",
        lambda a, level: f"full-insights-{a.id}-{level}-{today.isoformat()}",
    )


async def build_delta_insights_jobs(db: AsyncSession, now: datetime, lookback_days: int = 1) -> list[JobDescriptor]:
    today = now.date()
    slot = half_hour_slot(now)
    return _insight_jobs(
        await _active_ad_accounts(db),
        DELTA_INSIGHT_LEVELS,
        today - timedelta(days=lookback_days),
        today,
        "delta",
        lambda a, level: f"delta-insights-{a.id}-{level}-{slot}",
    )


async def build_recommendation_jobs(db: AsyncSession, now: datetime) -> list[JobDescriptor]:
    day = now.date().isoformat()
    account_ids = []
    for ad_account in await _active_ad_accounts(db):
        if ad_account.account_id not in account_ids:
            account_ids.append(ad_account.account_id)
    return [
        JobDescriptor(
            queue=RECOMMENDATIONS,
            name=RECOMMENDATIONS,
            payload={"account_id": str(account_id)},
            job_key=f"recommendations-{account_id}-{day}",
        )
        for account_id in account_ids
    ]


# ══════════════════════════════════════════════════════════════════════
#  SCHEDULER
# ══════════════════════════════════════════════════════════════════════

class JobScheduler:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or async_session
        self._clock = clock
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.state = "stopped"

    def _patterns(self) -> dict[str, tuple[str, Callable[[], Awaitable[int]]]]:
        s = self.settings
        return {
            "entity-sync": (s.entity_sync_cron, self.trigger_entity_sync),
            "full-insights": (s.full_insights_cron, self.trigger_full_sync),
            "delta-insights": (s.delta_insights_cron, self.trigger_delta_sync),
            "recommendations": (s.recommendations_cron, self.trigger_recommendations),
        }

    def start(self):
        if self.state == "running":
            logger.warning("Job scheduler already running")
            return
        self.scheduler = AsyncIOScheduler(timezone=self.settings.scheduler_timezone)
        for family, (pattern, trigger) in self._patterns().items():
            self.scheduler.add_job(
                trigger,
                trigger=CronTrigger.from_crontab(pattern, timezone=self.settings.scheduler_timezone),
                id=family,
                name=family,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"Scheduled {family} with cron '{pattern}'")
        self.scheduler.start()
        self.state = "running"
        logger.info("Job scheduler started")

    def stop(self):
        if self.state == "stopped":
            logger.warning("Job scheduler is not running")
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self.state = "stopped"
        logger.info("Job scheduler stopped")

    async def _enqueue(self, family: str, builder: Callable[[AsyncSession, datetime], Awaitable[list[JobDescriptor]]]) -> int:
        now = self._clock()
        try:
            async with session_scope(self.session_factory) as db:
                descriptors = await builder(db, now)
                added = await enqueue_bulk(db, descriptors)
        except Exception as e:
            logger.error(f"Scheduling {family} failed: {e}", exc_info=True)
            raise
        logger.info(f"{family}: {added} new job(s) of {len(descriptors)} built")
        return added

    async def trigger_entity_sync(self) -> int:
        return await self._enqueue("entity-sync", build_entity_sync_jobs)

    async def trigger_full_sync(self) -> int:
        days = self.settings.full_insights_lookback_days
        return await self._enqueue("full-insights", lambda db, now: build_full_insights_jobs(db, now, days))

    async def trigger_delta_sync(self) -> int:
        days = self.settings.delta_insights_lookback_days
        return await self._enqueue("delta-insights", lambda db, now: build_delta_insights_jobs(db, now, days))

    async def trigger_recommendations(self) -> int:
        return await self._enqueue("recommendations", build_recommendation_jobs)

    async def trigger(self, family: str) -> int:
        if family not in FAMILIES:
            raise ValueError(f"Unknown job family: {family}")
        _, trigger = self._patterns()[family]
        return await trigger()

    def next_fire_times(self) -> dict[str, Optional[datetime]]:
        """Upcoming fire time per family, computed from the cron pattern."""
        now = datetime.now(timezone.utc)
        result = {}
        for family, (pattern, _) in self._patterns().items():
            trigger = CronTrigger.from_crontab(pattern, timezone=self.settings.scheduler_timezone)
            result[family] = trigger.get_next_fire_time(None, now)
        return result

    def status(self) -> dict:
        return {
            "state": self.state,
            "next_fire_times": {
                k: v.isoformat() if v else None for k, v in self.next_fire_times().items()
            },
        }
