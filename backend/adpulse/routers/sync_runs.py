"""Sync Runs Router: history of sync passes and their outcomes."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.database import get_db
from adpulse.models import SyncRun

router = APIRouter()


def _run_to_response(run: SyncRun) -> dict:
    return {
        "id": run.id,
        "account_id": run.account_id,
        "connection_id": run.connection_id,
        "provider": run.provider,
        "sync_type": run.sync_type,
        "status": run.status,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "duration_seconds": run.duration_seconds,
        "counts": {
            "ad_accounts": run.ad_accounts_synced,
            "campaigns": run.campaigns_synced,
            "ad_groups": run.ad_groups_synced,
            "ads": run.ads_synced,
            "insights": run.insights_synced,
        },
        "errors": run.errors or [],
        "error_message": run.error_message,
        "error_category": run.error_category,
    }


@router.get("")
async def list_sync_runs(
    account_id: Optional[UUID] = None,
    connection_id: Optional[UUID] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    query = select(SyncRun)
    if account_id:
        query = query.where(SyncRun.account_id == account_id)
    if connection_id:
        query = query.where(SyncRun.connection_id == connection_id)
    if status:
        query = query.where(SyncRun.status == status)
    result = await db.execute(query.order_by(SyncRun.started_at.desc()).limit(limit))
    return [_run_to_response(r) for r in result.scalars().all()]


@router.get("/{run_id}")
async def get_sync_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    run = await db.get(SyncRun, run_id)
    if not run:
        raise HTTPException(404, "Sync run not found")
    return _run_to_response(run)
