"""
Tests for sync orchestration: per-entity isolation, run records and auth expiry.
"""

import uuid
from datetime import date, timedelta

import httpx
import pytest
from sqlalchemy import func, select

from adpulse.config import Settings
from adpulse.errors import AuthExpiredError, LimiterRejectedError, TransientError
from adpulse.models import Ad, AdAccount, AdGroup, Campaign, Insight, ProviderConnection, SyncRun, _utcnow
from adpulse.services.currency_service import CurrencyService
from adpulse.services.rate_limiter import RateLimiter
from adpulse.services.sync_service import SyncService
from adpulse.services.token_service import ensure_fresh_token


class FakeMetaClient:
    """In-memory stand-in for MetaGraphClient."""

    provider = "meta"

    def __init__(self, campaigns=None, ad_sets=None, ads=None, insights=None, fail_on=None):
        self.campaigns = campaigns if campaigns is not None else []
        self.ad_sets = ad_sets or []
        self.ads = ads or []
        self.insights = insights or []
        self.fail_on = fail_on or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    def _maybe_fail(self, name, ad_account_id=None):
        error = self.fail_on.get(name) or self.fail_on.get(f"{name}:{ad_account_id}")
        if error:
            raise error

    async def get_ad_accounts(self):
        return [{"id": "act_42", "account_id": "42"}]

    async def get_ad_account(self, ad_account_id):
        self._maybe_fail("get_ad_account", ad_account_id)
        return {"id": f"act_{ad_account_id}", "account_id": ad_account_id, "name": f"Account {ad_account_id}",
                "currency": "USD", "account_status": 1}

    async def get_campaigns(self, ad_account_id):
        self._maybe_fail("get_campaigns", ad_account_id)
        return self.campaigns

    async def get_ad_sets(self, ad_account_id):
        return self.ad_sets

    async def get_ads(self, ad_account_id):
        return self.ads

    async def get_insights(self, ad_account_id, level, since, until):
        return self.insights


def _service(session_factory, client):
    async def factory(conn, db, http_client=None, limiter=None):
        return client

    return SyncService(
        session_factory,
        CurrencyService(Settings(), rates={"USD": 1.0}),
        limiter=RateLimiter(Settings(meta_requests_per_minute=1000)),
        client_factory=factory,
    )


def _campaigns(n):
    return [{"id": f"c{i}", "name": f"Campaign {i}", "status": "ACTIVE", "daily_budget": "1000"} for i in range(1, n + 1)]


async def _count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.anyio
async def test_full_sync_builds_the_hierarchy(session_factory, meta_connection):
    client = FakeMetaClient(
        campaigns=_campaigns(1),
        ad_sets=[{"id": "s1", "name": "Set", "campaign_id": "c1", "targeting": {"publisher_platforms": ["instagram"]}}],
        ads=[{"id": "a1", "name": "Ad", "adset_id": "s1", "creative": {"title": "Hi"}},
             {"id": "a2", "name": "Orphan", "adset_id": "missing"}],
    )
    summary = await _service(session_factory, client).sync_connection(meta_connection.id)

    assert summary.status == "success"
    assert summary.counts == {"account": 1, "campaign": 1, "ad_group": 1, "ad": 1, "insights": 0}
    assert summary.skipped == 1
    assert await _count(session_factory, AdAccount) == 1
    assert await _count(session_factory, AdGroup) == 1

    async with session_factory() as db:
        ad = (await db.execute(select(Ad))).scalar_one()
        run = await db.get(SyncRun, summary.sync_run_id)
        conn = await db.get(ProviderConnection, meta_connection.id)
    # inherits the parent ad set's targeting
    assert ad.channel == "instagram"
    assert run.status == "success"
    assert run.campaigns_synced == 1
    assert run.completed_at is not None
    assert conn.last_sync_result["status"] == "success"


@pytest.mark.anyio
async def test_malformed_campaign_does_not_stop_siblings(session_factory, meta_connection):
    campaigns = _campaigns(10)
    campaigns[4] = {"id": "c5", "name": ""}
    summary = await _service(session_factory, FakeMetaClient(campaigns=campaigns)).sync_connection(meta_connection.id)

    assert summary.status == "partial"
    assert summary.counts["campaign"] == 9
    assert len(summary.errors) == 1
    assert "c5" in summary.errors[0]
    assert await _count(session_factory, Campaign) == 9

    async with session_factory() as db:
        run = await db.get(SyncRun, summary.sync_run_id)
    assert run.status == "partial"
    assert run.error_category == "validation"
    assert len(run.errors) == 1


@pytest.mark.anyio
async def test_expired_token_fails_run_and_deactivates_connection(session_factory, meta_connection):
    client = FakeMetaClient(fail_on={"get_ad_account": AuthExpiredError("Session has expired", provider="meta")})
    service = _service(session_factory, client)

    with pytest.raises(AuthExpiredError):
        await service.sync_connection(meta_connection.id)

    async with session_factory() as db:
        conn = await db.get(ProviderConnection, meta_connection.id)
        run = (await db.execute(select(SyncRun))).scalar_one()
    assert conn.is_active is False
    assert conn.status == "expired"
    assert run.status == "failed"
    assert run.error_category == "auth_expired"

    # an inactive connection is refused up front
    with pytest.raises(AuthExpiredError, match="inactive"):
        await service.sync_connection(meta_connection.id)


@pytest.mark.anyio
async def test_one_ad_account_failure_does_not_abort_the_others(session_factory, meta_connection):
    async with session_factory() as db:
        conn = await db.get(ProviderConnection, meta_connection.id)
        conn.selected_account_ids = ["act_1", "2"]
        await db.commit()

    client = FakeMetaClient(
        campaigns=_campaigns(2),
        fail_on={"get_campaigns:1": TransientError("Graph API timed out", provider="meta")},
    )
    summary = await _service(session_factory, client).sync_connection(meta_connection.id)

    assert summary.status == "partial"
    assert summary.failed_accounts == ["1"]
    assert summary.error_category == "transient"
    assert summary.counts["account"] == 2
    assert summary.counts["campaign"] == 2


@pytest.mark.anyio
async def test_unknown_connection(session_factory):
    with pytest.raises(ValueError):
        await _service(session_factory, FakeMetaClient()).sync_connection(uuid.uuid4())


@pytest.mark.anyio
async def test_sync_insights_records_its_own_run(session_factory, meta_connection):
    client = FakeMetaClient(
        campaigns=_campaigns(1),
        insights=[{"campaign_id": "c1", "date_start": "2024-01-01", "spend": "4"}],
    )
    service = _service(session_factory, client)
    await service.sync_connection(meta_connection.id)

    async with session_factory() as db:
        ad_account = (await db.execute(select(AdAccount))).scalar_one()
    result = await service.sync_insights(ad_account.id, "campaign", date(2024, 1, 1), date(2024, 1, 1), "delta")

    assert result.upserted == 1
    assert await _count(session_factory, Insight) == 1
    async with session_factory() as db:
        runs = (await db.execute(select(SyncRun).where(SyncRun.sync_type == "delta"))).scalars().all()
    assert len(runs) == 1
    assert runs[0].insights_synced == 1


@pytest.mark.anyio
async def test_expired_meta_token_is_rejected_before_any_request(session_factory, meta_connection):
    async with session_factory() as db:
        conn = await db.get(ProviderConnection, meta_connection.id)
        conn.expires_at = _utcnow() - timedelta(hours=1)
        with pytest.raises(AuthExpiredError):
            await ensure_fresh_token(conn, db)
        assert conn.status == "expired"
        assert conn.is_active is False


@pytest.mark.anyio
async def test_google_token_refresh(session_factory, account):
    def handler(request: httpx.Request) -> httpx.Response:
        assert b"grant_type=refresh_token" in request.content
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 1800})

    async with session_factory() as db:
        conn = ProviderConnection(
            account_id=account.id, provider="google", name="G", access_token="stale",
            refresh_token="refresh-me", expires_at=_utcnow() + timedelta(minutes=1),
        )
        db.add(conn)
        await db.flush()
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        await ensure_fresh_token(conn, db, http)
        assert conn.access_token == "fresh"
        assert conn.expires_at > _utcnow() + timedelta(minutes=20)


async def _deactivate(session_factory, connection_id):
    async with session_factory() as db:
        conn = await db.get(ProviderConnection, connection_id)
        conn.is_active = False
        conn.status = "expired"
        await db.commit()


@pytest.mark.anyio
async def test_inactive_connection_leaves_a_failed_run(session_factory, meta_connection):
    await _deactivate(session_factory, meta_connection.id)

    with pytest.raises(AuthExpiredError, match="reconnect required"):
        await _service(session_factory, FakeMetaClient()).sync_connection(meta_connection.id)

    async with session_factory() as db:
        run = (await db.execute(select(SyncRun))).scalar_one()
    assert run.status == "failed"
    assert run.error_category == "auth_expired"
    assert run.connection_id == meta_connection.id
    assert run.completed_at is not None
    assert await _count(session_factory, AdAccount) == 0


@pytest.mark.anyio
async def test_insight_sync_on_inactive_connection_leaves_a_failed_run(session_factory, meta_connection):
    service = _service(session_factory, FakeMetaClient(campaigns=_campaigns(1)))
    await service.sync_connection(meta_connection.id)
    async with session_factory() as db:
        ad_account = (await db.execute(select(AdAccount))).scalar_one()
    await _deactivate(session_factory, meta_connection.id)

    with pytest.raises(AuthExpiredError):
        await service.sync_insights(ad_account.id, "campaign", date(2024, 1, 1), date(2024, 1, 1), "delta")

    async with session_factory() as db:
        run = (await db.execute(select(SyncRun).where(SyncRun.sync_type == "delta"))).scalar_one()
    assert run.status == "failed"
    assert run.error_category == "auth_expired"


@pytest.mark.anyio
async def test_full_provider_defers_without_a_run_record(session_factory, meta_connection):
    service = _service(session_factory, FakeMetaClient(campaigns=_campaigns(1)))
    held = [service.limiter.acquire("meta", "other-1"), service.limiter.acquire("meta", "other-2")]

    with pytest.raises(LimiterRejectedError) as exc_info:
        await service.sync_connection(meta_connection.id)
    assert exc_info.value.retry_after > 0
    assert await _count(session_factory, SyncRun) == 0

    service.limiter.release(held[0])
    summary = await service.sync_connection(meta_connection.id)
    assert summary.status == "success"
    assert service.limiter.in_flight("meta") == 1
