"""
Entity Reconciler: idempotent upsert-by-natural-key with field-level change detection.

For one normalized entity:
- no stored row → insert, one `created` ledger row with a snapshot of key fields
- stored row    → diff tracked fields, one ledger row per differing field,
                  then overwrite every stored field with the incoming values

Each entity (row + its ledger rows) is written in its own transaction.
A concurrent insert of the same natural key is retried once as an update,
which gives last-write-wins.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adpulse.models import Ad, AdAccount, AdGroup, Campaign, ChangeType
from adpulse.services.change_tracking_service import ChangeRecord, EntityRef, record_changes
from adpulse.services.currency_service import CurrencyService
from adpulse.services.normalization_service import EntityPayload

logger = logging.getLogger(__name__)

MODELS = {
    "account": AdAccount,
    "campaign": Campaign,
    "ad_group": AdGroup,
    "ad": Ad,
}

PARENT_COLUMN = {
    "campaign": "ad_account_id",
    "ad_group": "campaign_id",
    "ad": "ad_group_id",
}

TRACKED_FIELDS = {
    "account": ("name", "status", "currency", "timezone"),
    "campaign": ("name", "status", "objective", "channel", "budget_amount"),
    "ad_group": ("name", "status", "channel", "budget_amount", "targeting"),
    "ad": ("name", "status", "channel", "creative"),
}

SNAPSHOT_FIELDS = {
    "account": ("name", "status", "currency", "timezone"),
    "campaign": ("name", "status", "objective", "channel", "budget_amount", "budget_currency"),
    "ad_group": ("name", "status", "channel", "budget_amount", "budget_currency"),
    "ad": ("name", "status", "channel"),
}

BUDGET_TOLERANCE = 0.01

# Keys the reconciler owns inside metadata; anything else is preserved across syncs
_OWNED_METADATA_KEYS = ("raw", "original_amount", "original_currency", "currency_note")


@dataclass
class SyncContext:
    """Everything about the surrounding sync that a single entity write needs."""
    account_id: uuid.UUID
    provider: str
    reporting_currency: str
    native_currency: Optional[str] = None
    connection_id: Optional[uuid.UUID] = None
    sync_run_id: Optional[uuid.UUID] = None


@dataclass
class ReconcileResult:
    entity: Any
    changes: list[ChangeRecord] = field(default_factory=list)
    created: bool = False


def values_differ(field_name: str, old: Any, new: Any) -> bool:
    if field_name == "budget_amount":
        if old is None and new is None:
            return False
        if old is None or new is None:
            return True
        return abs(float(old) - float(new)) > BUDGET_TOLERANCE
    # dict/list equality is structural
    return old != new


def same_native_budget(old_metadata: Optional[dict], new_metadata: Optional[dict]) -> bool:
    """True when both sides carry the same budget in the ad account's own currency."""
    old_metadata, new_metadata = old_metadata or {}, new_metadata or {}
    if "original_amount" not in old_metadata or "original_amount" not in new_metadata:
        return False
    if old_metadata.get("original_currency") != new_metadata.get("original_currency"):
        return False
    return not values_differ("budget_amount", old_metadata["original_amount"], new_metadata["original_amount"])


def diff_entity(level: str, existing: dict, incoming: dict) -> list[ChangeRecord]:
    """Pure field diff over the tracked fields of `level`."""
    changes = []
    for name in TRACKED_FIELDS[level]:
        old, new = existing.get(name), incoming.get(name)
        if values_differ(name, old, new):
            kind = ChangeType.STATUS_CHANGE.value if name == "status" else ChangeType.UPDATED.value
            changes.append(ChangeRecord(field_name=name, old_value=old, new_value=new, change_type=kind))
    return changes


def snapshot(level: str, values: dict) -> dict:
    return {name: values.get(name) for name in SNAPSHOT_FIELDS[level]}


def plan_reconcile(level: str, existing: Optional[dict], incoming: dict) -> list[ChangeRecord]:
    """Ledger rows a write of `incoming` over `existing` produces."""
    if existing is None:
        return [ChangeRecord(
            field_name="_entity",
            old_value=None,
            new_value=snapshot(level, incoming),
            change_type=ChangeType.CREATED.value,
        )]
    return diff_entity(level, existing, incoming)


def _row_values(level: str, row: Any) -> dict:
    return {name: getattr(row, name) for name in TRACKED_FIELDS[level]}


class EntityReconciler:
    def __init__(self, session_factory: async_sessionmaker, currency: CurrencyService):
        self.session_factory = session_factory
        self.currency = currency

    async def find_by_natural_key(self, db: AsyncSession, level: str, account_id: uuid.UUID, provider: str, external_id: str):
        model = MODELS[level]
        result = await db.execute(
            select(model).where(
                model.account_id == account_id,
                model.provider == provider,
                model.external_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def _incoming_values(self, payload: EntityPayload, ctx: SyncContext, existing: Any) -> dict:
        metadata = dict(existing.metadata_json or {}) if existing is not None else {}
        for key in _OWNED_METADATA_KEYS:
            metadata.pop(key, None)
        metadata["raw"] = payload.raw

        values: dict[str, Any] = {"name": payload.name, "status": payload.status}
        level = payload.level
        if level == "account":
            values.update(currency=payload.currency, timezone=payload.timezone, connection_id=ctx.connection_id)
            values["status"] = payload.status or "unknown"
        else:
            values["channel"] = payload.channel
        if level == "campaign":
            values["objective"] = payload.objective
        if level in ("campaign", "ad_group"):
            money = await self.currency.convert_money(
                payload.budget_amount, ctx.native_currency, ctx.reporting_currency,
            )
            values["budget_amount"] = money.amount
            values["budget_currency"] = money.currency if money.amount is not None else None
            if money.original_amount is not None:
                metadata.update(money.metadata())
        if level == "ad_group":
            values["targeting"] = payload.targeting
        if level == "ad":
            values["creative"] = payload.creative

        values["metadata_json"] = metadata
        return values

    async def _reconcile_in(
        self,
        db: AsyncSession,
        payload: EntityPayload,
        ctx: SyncContext,
        parent_id: Optional[uuid.UUID],
    ) -> ReconcileResult:
        level = payload.level
        model = MODELS[level]
        existing = await self.find_by_natural_key(db, level, ctx.account_id, ctx.provider, payload.external_id)
        values = await self._incoming_values(payload, ctx, existing)
        if level in PARENT_COLUMN:
            values[PARENT_COLUMN[level]] = parent_id

        current = _row_values(level, existing) if existing is not None else None
        # Converted budgets move with exchange rates; only a native change is a change
        if current is not None and "budget_amount" in current and same_native_budget(
            existing.metadata_json, values["metadata_json"]
        ):
            current["budget_amount"] = values.get("budget_amount")
        changes = plan_reconcile(level, current, values)

        if existing is None:
            entity = model(
                account_id=ctx.account_id,
                provider=ctx.provider,
                external_id=payload.external_id,
                **values,
            )
            db.add(entity)
        else:
            entity = existing
            for name, value in values.items():
                setattr(entity, name, value)
        await db.flush()

        ref = EntityRef(
            entity_type=level,
            entity_id=entity.id,
            account_id=ctx.account_id,
            provider=ctx.provider,
            external_id=payload.external_id,
        )
        await record_changes(db, ref, changes, ctx.sync_run_id)
        return ReconcileResult(entity=entity, changes=changes, created=existing is None)

    async def reconcile(
        self,
        payload: EntityPayload,
        ctx: SyncContext,
        parent_id: Optional[uuid.UUID] = None,
    ) -> ReconcileResult:
        """Upsert one entity and append its ledger rows in a single transaction."""
        if payload.level in PARENT_COLUMN and parent_id is None:
            raise ValueError(f"{payload.level} {payload.external_id} needs a stored parent")

        try:
            return await self._reconcile_once(payload, ctx, parent_id)
        except IntegrityError:
            logger.warning(f"Concurrent insert of {payload.level} {payload.external_id}; retrying as update")
            return await self._reconcile_once(payload, ctx, parent_id)

    async def _reconcile_once(self, payload, ctx, parent_id) -> ReconcileResult:
        async with self.session_factory() as db:
            async with db.begin():
                return await self._reconcile_in(db, payload, ctx, parent_id)
