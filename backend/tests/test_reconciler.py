"""
Tests for the entity reconciler: idempotent upserts and field-level change rows.
"""

import pytest
from sqlalchemy import func, select

from adpulse.models import AdAccount, Campaign, ChangeHistory
from adpulse.services.currency_service import CurrencyService
from adpulse.services.normalization_service import normalize_meta_ad_account, normalize_meta_campaign
from adpulse.services.reconciler_service import (
    EntityReconciler,
    SyncContext,
    diff_entity,
    plan_reconcile,
    same_native_budget,
    values_differ,
)
from adpulse.config import Settings


RATES = {"USD": 1.0, "EUR": 0.5}


def _campaign(**overrides):
    raw = {"id": "c1", "name": "Spring", "status": "ACTIVE", "objective": "OUTCOME_SALES", "daily_budget": "1000"}
    raw.update(overrides)
    return normalize_meta_campaign(raw, "42")


@pytest.fixture
def reconciler(session_factory):
    return EntityReconciler(session_factory, CurrencyService(Settings(), rates=RATES))


@pytest.fixture
async def stored_ad_account(reconciler, account, meta_connection):
    ctx = SyncContext(account_id=account.id, provider="meta", reporting_currency="USD", connection_id=meta_connection.id)
    payload = normalize_meta_ad_account({"id": "act_42", "name": "Acme", "currency": "EUR", "account_status": 1})
    result = await reconciler.reconcile(payload, ctx)
    return result.entity


def _ctx(account, native="EUR"):
    return SyncContext(account_id=account.id, provider="meta", reporting_currency="USD", native_currency=native)


async def _count(session_factory, model, **filters):
    async with session_factory() as db:
        query = select(func.count()).select_from(model)
        for name, value in filters.items():
            query = query.where(getattr(model, name) == value)
        return (await db.execute(query)).scalar_one()


def test_budget_tolerance():
    assert values_differ("budget_amount", 10.0, 10.005) is False
    assert values_differ("budget_amount", 10.0, 10.02) is True
    assert values_differ("budget_amount", None, 10.0) is True
    assert values_differ("budget_amount", None, None) is False


def test_diff_marks_status_changes():
    changes = diff_entity(
        "campaign",
        {"name": "A", "status": "active", "budget_amount": 10.0},
        {"name": "B", "status": "paused", "budget_amount": 10.0},
    )
    kinds = {c.field_name: c.change_type for c in changes}
    assert kinds == {"name": "updated", "status": "status_change"}


def test_plan_for_new_entity_is_single_created_row():
    changes = plan_reconcile("campaign", None, {"name": "A", "status": "active", "budget_amount": 5})
    assert len(changes) == 1
    assert changes[0].change_type == "created"
    assert changes[0].new_value["name"] == "A"


@pytest.mark.anyio
async def test_new_campaign_converts_budget_and_logs_created(reconciler, session_factory, account, stored_ad_account):
    result = await reconciler.reconcile(_campaign(), _ctx(account), stored_ad_account.id)
    assert result.created is True
    campaign = result.entity
    # 10.00 EUR at 0.5 per USD
    assert campaign.budget_amount == 20.0
    assert campaign.budget_currency == "USD"
    assert campaign.metadata_json["original_amount"] == 10.0
    assert campaign.metadata_json["original_currency"] == "EUR"
    assert await _count(session_factory, ChangeHistory, entity_id=campaign.id, change_type="created") == 1


@pytest.mark.anyio
async def test_reconcile_is_idempotent(reconciler, session_factory, account, stored_ad_account):
    await reconciler.reconcile(_campaign(), _ctx(account), stored_ad_account.id)
    second = await reconciler.reconcile(_campaign(), _ctx(account), stored_ad_account.id)

    assert second.created is False
    assert second.changes == []
    assert await _count(session_factory, Campaign, external_id="c1") == 1
    assert await _count(session_factory, ChangeHistory, entity_id=second.entity.id) == 1


@pytest.mark.anyio
async def test_status_flip_writes_exactly_one_status_row(reconciler, session_factory, account, stored_ad_account):
    await reconciler.reconcile(_campaign(), _ctx(account), stored_ad_account.id)
    result = await reconciler.reconcile(_campaign(status="PAUSED"), _ctx(account), stored_ad_account.id)

    assert [c.field_name for c in result.changes] == ["status"]
    assert result.entity.status == "paused"
    async with session_factory() as db:
        rows = (await db.execute(
            select(ChangeHistory).where(
                ChangeHistory.entity_id == result.entity.id,
                ChangeHistory.change_type == "status_change",
            )
        )).scalars().all()
    assert len(rows) == 1
    assert rows[0].old_value == "active"
    assert rows[0].new_value == "paused"


@pytest.mark.anyio
async def test_child_without_parent_is_rejected(reconciler, account):
    with pytest.raises(ValueError, match="needs a stored parent"):
        await reconciler.reconcile(_campaign(), _ctx(account), None)


@pytest.mark.anyio
async def test_unknown_native_currency_keeps_amount_with_note(reconciler, account, stored_ad_account):
    result = await reconciler.reconcile(_campaign(), _ctx(account, native="XYZ"), stored_ad_account.id)
    assert result.entity.budget_amount == 10.0
    assert result.entity.budget_currency == "XYZ"
    assert "currency_note" in result.entity.metadata_json


@pytest.mark.anyio
async def test_account_status_transitions_are_tracked(reconciler, session_factory, account, stored_ad_account):
    ctx = SyncContext(account_id=account.id, provider="meta", reporting_currency="USD")
    payload = normalize_meta_ad_account({"id": "act_42", "name": "Acme", "currency": "EUR", "account_status": 2})
    result = await reconciler.reconcile(payload, ctx)
    assert result.entity.status == "disabled"
    assert await _count(session_factory, AdAccount) == 1
    assert [c.change_type for c in result.changes] == ["status_change"]


def test_native_budget_comparison():
    assert same_native_budget(
        {"original_amount": 10.0, "original_currency": "EUR"},
        {"original_amount": 10.004, "original_currency": "EUR"},
    ) is True
    assert same_native_budget(
        {"original_amount": 10.0, "original_currency": "EUR"},
        {"original_amount": 10.0, "original_currency": "GBP"},
    ) is False
    assert same_native_budget({}, {"original_amount": 10.0, "original_currency": "EUR"}) is False


@pytest.mark.anyio
async def test_rate_movement_alone_logs_no_budget_change(session_factory, account, stored_ad_account):
    currency = CurrencyService(Settings(), rates={"USD": 1.0, "EUR": 0.92})
    reconciler = EntityReconciler(session_factory, currency)
    payload = _campaign(daily_budget="500000")
    first = await reconciler.reconcile(payload, _ctx(account), stored_ad_account.id)
    assert first.entity.budget_amount == 5434.78

    currency._rates["EUR"] = 0.9209
    second = await reconciler.reconcile(payload, _ctx(account), stored_ad_account.id)

    assert second.changes == []
    # the converted value follows the current rate
    assert second.entity.budget_amount == 5429.47
    assert await _count(session_factory, ChangeHistory, entity_id=second.entity.id) == 1


@pytest.mark.anyio
async def test_native_budget_change_is_logged_in_reporting_currency(reconciler, account, stored_ad_account):
    await reconciler.reconcile(_campaign(), _ctx(account), stored_ad_account.id)
    result = await reconciler.reconcile(_campaign(daily_budget="1500"), _ctx(account), stored_ad_account.id)

    assert [(c.field_name, c.old_value, c.new_value) for c in result.changes] == [("budget_amount", 20.0, 30.0)]
