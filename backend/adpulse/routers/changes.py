"""Changes Router: read-only view of the change history ledger."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.database import get_db
from adpulse.models import ChangeHistory
from adpulse.services.change_tracking_service import (
    get_changes_with_performance,
    get_entity_changes,
    get_recent_changes,
)

router = APIRouter()


def _change_to_response(change: ChangeHistory) -> dict:
    return {
        "id": change.id,
        "entity_type": change.entity_type,
        "entity_id": change.entity_id,
        "external_id": change.external_id,
        "provider": change.provider,
        "change_type": change.change_type,
        "field_name": change.field_name,
        "old_value": change.old_value,
        "new_value": change.new_value,
        "detected_at": change.detected_at,
        "sync_run_id": change.sync_run_id,
    }


@router.get("")
async def recent_changes(
    account_id: UUID,
    entity_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    changes = await get_recent_changes(db, account_id, limit=limit, entity_type=entity_type)
    return [_change_to_response(c) for c in changes]


@router.get("/{entity_type}/{entity_id}")
async def entity_changes(
    entity_type: str,
    entity_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    with_performance: bool = False,
    days: int = Query(7, ge=1, le=90),
    db: AsyncSession = Depends(get_db),
):
    if with_performance:
        rows = await get_changes_with_performance(db, entity_type, entity_id, limit=limit, days=days)
        return [
            {**_change_to_response(r["change"]), "before": r["before"], "after": r["after"]}
            for r in rows
        ]
    changes = await get_entity_changes(db, entity_type, entity_id, limit=limit)
    return [_change_to_response(c) for c in changes]
