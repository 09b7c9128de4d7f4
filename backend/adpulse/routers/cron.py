"""
Cron Router: external-cron entry points for the four job families.

For deployments without a long-running scheduler process (e.g. Upstash
QStash or a platform cron), each endpoint enqueues the same jobs the
scheduler would, so the worker picks them up. Job keys make repeated calls
within the same period idempotent.

Send either:
  X-Cron-Secret: <CRON_SECRET>
  Authorization: Bearer <CRON_SECRET>
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from adpulse.config import get_settings
from adpulse.jobs.scheduler import JobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not hmac.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")


def get_scheduler() -> JobScheduler:
    # triggers only; the cron loop itself runs in the worker process
    return JobScheduler()


async def _run(family: str, scheduler: JobScheduler) -> dict:
    logger.info(f"Cron: {family} triggered")
    added = await scheduler.trigger(family)
    return {"family": family, "jobs_added": added}


@router.post("/entity-sync", dependencies=[Depends(require_cron_secret)])
async def cron_entity_sync(scheduler: JobScheduler = Depends(get_scheduler)):
    return await _run("entity-sync", scheduler)


@router.post("/full-insights", dependencies=[Depends(require_cron_secret)])
async def cron_full_insights(scheduler: JobScheduler = Depends(get_scheduler)):
    return await _run("full-insights", scheduler)


@router.post("/delta-insights", dependencies=[Depends(require_cron_secret)])
async def cron_delta_insights(scheduler: JobScheduler = Depends(get_scheduler)):
    return await _run("delta-insights", scheduler)


@router.post("/recommendations", dependencies=[Depends(require_cron_secret)])
async def cron_recommendations(scheduler: JobScheduler = Depends(get_scheduler)):
    return await _run("recommendations", scheduler)
