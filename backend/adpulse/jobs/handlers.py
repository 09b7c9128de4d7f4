"""Job handlers and the name -> handler registry used by the worker runtime."""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from adpulse.config import Settings, get_settings
from adpulse.jobs.queues import ENTITY_SYNC, INSIGHTS_SYNC, RECOMMENDATIONS
from adpulse.services.currency_service import CurrencyService
from adpulse.services.playbook_service import PlaybookRepository
from adpulse.services.rate_limiter import get_rate_limiter
from adpulse.services.recommendation_service import RecommendationService
from adpulse.services.sync_service import SyncService

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Services shared by every job a worker process runs."""
    session_factory: async_sessionmaker
    sync_service: SyncService
    recommendation_service: RecommendationService


def build_job_context(
    session_factory: Optional[async_sessionmaker] = None,
    settings: Optional[Settings] = None,
) -> JobContext:
    settings = settings or get_settings()
    if session_factory is None:
        from adpulse.database import async_session
        session_factory = async_session
    currency = CurrencyService(settings)
    return JobContext(
        session_factory=session_factory,
        sync_service=SyncService(
            session_factory,
            currency,
            limiter=get_rate_limiter(),
            insights_max_range_days=settings.insights_max_range_days,
        ),
        recommendation_service=RecommendationService(
            session_factory,
            PlaybookRepository(settings.playbooks_dir),
            lookback_days=settings.recommendation_lookback_days,
            expiry_days=settings.recommendation_expiry_days,
        ),
    )


async def process_entity_sync(ctx: JobContext, payload: dict) -> dict:
    summary = await ctx.sync_service.sync_connection(
        uuid.UUID(payload["connection_id"]),
        sync_type=payload.get("sync_type", "full"),
    )
    logger.info(f"Entity sync for connection {payload['connection_id']}: {summary.status}")
    return summary.to_dict()


async def process_insights_sync(ctx: JobContext, payload: dict) -> dict:
    result = await ctx.sync_service.sync_insights(
        uuid.UUID(payload["ad_account_id"]),
        payload["level"],
        date.fromisoformat(payload["start"]),
        date.fromisoformat(payload["end"]),
        sync_type=payload.get("sync_type", "full"),
    )
    if result.errors:
        logger.warning(f"Insights {payload['level']} for {payload['ad_account_id']}: {len(result.errors)} row error(s)")
    return {
        "level": result.level,
        "fetched": result.fetched,
        "upserted": result.upserted,
        "skipped": result.skipped,
        "ranges": result.ranges,
        "errors": result.errors,
    }


async def process_recommendations(ctx: JobContext, payload: dict) -> dict:
    ad_account_id = payload.get("ad_account_id")
    summary = await ctx.recommendation_service.generate(
        uuid.UUID(payload["account_id"]),
        ad_account_id=uuid.UUID(ad_account_id) if ad_account_id else None,
        playbook_keys=payload.get("playbook_keys"),
    )
    return summary.to_dict()


JobHandler = Callable[[JobContext, dict], Awaitable[dict]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    ENTITY_SYNC: process_entity_sync,
    INSIGHTS_SYNC: process_insights_sync,
    RECOMMENDATIONS: process_recommendations,
}


def resolve_job_handler(name: str) -> JobHandler:
    handler = JOB_HANDLERS.get(name)
    if handler is None:
        raise ValueError(f"No handler registered for job {name}")
    return handler
