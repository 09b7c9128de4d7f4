"""
Change Tracking Service: append-only ledger of field-level entity changes.

Only inserts and reads are exposed. Deep objects (metadata, targeting,
creative) are stored as one row holding the whole old and new object.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.models import ChangeHistory, ChangeType, Insight

logger = logging.getLogger(__name__)

PERFORMANCE_METRICS = ("spend", "clicks", "impressions", "conversions")


@dataclass
class EntityRef:
    entity_type: str
    entity_id: uuid.UUID
    account_id: uuid.UUID
    provider: str
    external_id: Optional[str] = None


@dataclass
class ChangeRecord:
    field_name: str
    old_value: Any
    new_value: Any
    change_type: str = ChangeType.UPDATED.value


async def record_change(
    db: AsyncSession,
    ref: EntityRef,
    field_name: str,
    old_value: Any,
    new_value: Any,
    change_type: str,
    sync_run_id: Optional[uuid.UUID] = None,
) -> ChangeHistory:
    """Append one ledger row. Flushes but does not commit."""
    row = ChangeHistory(
        account_id=ref.account_id,
        provider=ref.provider,
        entity_type=ref.entity_type,
        entity_id=ref.entity_id,
        external_id=ref.external_id,
        change_type=change_type,
        field_name=field_name,
        old_value=old_value,
        new_value=new_value,
        sync_run_id=sync_run_id,
    )
    db.add(row)
    await db.flush()
    return row


async def record_changes(
    db: AsyncSession,
    ref: EntityRef,
    changes: list[ChangeRecord],
    sync_run_id: Optional[uuid.UUID] = None,
) -> list[ChangeHistory]:
    rows = []
    for change in changes:
        rows.append(await record_change(
            db, ref, change.field_name, change.old_value, change.new_value, change.change_type, sync_run_id,
        ))
    if rows:
        logger.info(
            f"Recorded {len(rows)} change(s) for {ref.entity_type} {ref.external_id}: "
            f"{', '.join(r.field_name for r in rows)}"
        )
    return rows


async def get_entity_changes(
    db: AsyncSession,
    entity_type: str,
    entity_id: uuid.UUID,
    limit: int = 50,
) -> list[ChangeHistory]:
    result = await db.execute(
        select(ChangeHistory)
        .where(ChangeHistory.entity_type == entity_type, ChangeHistory.entity_id == entity_id)
        .order_by(ChangeHistory.detected_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_recent_changes(
    db: AsyncSession,
    account_id: uuid.UUID,
    limit: int = 50,
    entity_type: Optional[str] = None,
) -> list[ChangeHistory]:
    query = select(ChangeHistory).where(ChangeHistory.account_id == account_id)
    if entity_type:
        query = query.where(ChangeHistory.entity_type == entity_type)
    result = await db.execute(query.order_by(ChangeHistory.detected_at.desc()).limit(limit))
    return list(result.scalars().all())


def _sum_metrics(rows: list[Insight]) -> dict:
    totals = {key: 0.0 for key in PERFORMANCE_METRICS}
    for row in rows:
        for key in PERFORMANCE_METRICS:
            value = (row.metrics or {}).get(key)
            if isinstance(value, (int, float)):
                totals[key] += value
    totals["days"] = len(rows)
    return {k: round(v, 2) if isinstance(v, float) else v for k, v in totals.items()}


async def get_changes_with_performance(
    db: AsyncSession,
    entity_type: str,
    entity_id: uuid.UUID,
    limit: int = 20,
    days: int = 7,
) -> list[dict]:
    """
    Each change with the entity's daily totals in the `days` before the change
    date and the `days` starting on it.
    """
    changes = await get_entity_changes(db, entity_type, entity_id, limit)
    if not changes:
        return []

    earliest = min(c.detected_at.date() for c in changes) - timedelta(days=days)
    latest = max(c.detected_at.date() for c in changes) + timedelta(days=days)
    result = await db.execute(
        select(Insight).where(
            Insight.entity_type == entity_type,
            Insight.entity_id == entity_id,
            Insight.window == "1d",
            Insight.date >= earliest,
            Insight.date <= latest,
        )
    )
    insights = list(result.scalars().all())

    output = []
    for change in changes:
        changed_on: date = change.detected_at.date()
        before = [i for i in insights if changed_on - timedelta(days=days) <= i.date < changed_on]
        after = [i for i in insights if changed_on <= i.date < changed_on + timedelta(days=days)]
        output.append({
            "change": change,
            "before": _sum_metrics(before),
            "after": _sum_metrics(after),
        })
    return output
