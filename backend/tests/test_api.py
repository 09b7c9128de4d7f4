"""
Tests for the management API and the cron endpoints (httpx ASGITransport).
"""

import uuid
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from adpulse.config import Settings
from adpulse.database import get_db
from adpulse.jobs.scheduler import JobScheduler
from adpulse.main import app
from adpulse.models import AdAccount, ChangeHistory, ProviderConnection, Recommendation, SyncRun
from adpulse.routers.connections import get_sync_service
from adpulse.routers.cron import get_scheduler
from adpulse.services.currency_service import CurrencyService
from adpulse.services.sync_service import SyncService


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: JobScheduler(session_factory=session_factory, settings=Settings())
    app.dependency_overrides[get_sync_service] = lambda: SyncService(
        session_factory, CurrencyService(Settings(), rates={"USD": 1.0}),
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ── Connections ──────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_create_connection_masks_token(client):
    response = await client.post("/api/connections", json={
        "provider": "meta", "name": "Acme Meta", "access_token": "EAAB-secret-9876", "currency": "eur",
    })
    assert response.status_code == 200
    data = response.json()
    assert data["access_token"] == "…9876"
    assert data["status"] == "active"
    assert data["has_refresh_token"] is False

    listed = await client.get("/api/connections", params={"account_id": data["account_id"]})
    assert [c["id"] for c in listed.json()] == [data["id"]]


@pytest.mark.anyio
async def test_create_connection_validates_payload(client):
    response = await client.post("/api/connections", json={"provider": "tiktok", "name": "x", "access_token": "t"})
    assert response.status_code == 422
    missing_account = await client.post("/api/connections", json={
        "provider": "google", "name": "G", "access_token": "t", "account_id": str(uuid.uuid4()),
    })
    assert missing_account.status_code == 404


@pytest.mark.anyio
async def test_deactivate_and_reconnect(client, meta_connection):
    url = f"/api/connections/{meta_connection.id}"
    off = await client.patch(url, json={"is_active": False})
    assert off.json()["status"] == "inactive"
    assert off.json()["is_active"] is False

    on = await client.patch(url, json={"access_token": "new-token-1111"})
    assert on.json()["status"] == "active"
    assert on.json()["access_token"] == "…1111"


@pytest.mark.anyio
async def test_delete_connection(client, session_factory, meta_connection):
    response = await client.delete(f"/api/connections/{meta_connection.id}")
    assert response.status_code == 200
    async with session_factory() as db:
        assert await db.get(ProviderConnection, meta_connection.id) is None
    assert (await client.get(f"/api/connections/{meta_connection.id}")).status_code == 404


@pytest.mark.anyio
async def test_sync_unknown_connection_is_404(client):
    response = await client.post(f"/api/connections/{uuid.uuid4()}/sync")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_sync_inactive_connection_is_401(client, session_factory, meta_connection):
    async with session_factory() as db:
        conn = await db.get(ProviderConnection, meta_connection.id)
        conn.is_active = False
        await db.commit()
    response = await client.post(f"/api/connections/{meta_connection.id}/sync")
    assert response.status_code == 401
    assert "auth_expired" in response.json()["detail"]


# ── Sync runs, changes, recommendations ──────────────────────────────

@pytest.mark.anyio
async def test_sync_runs_list_and_get(client, session_factory, account, meta_connection):
    async with session_factory() as db:
        run = SyncRun(account_id=account.id, connection_id=meta_connection.id, provider="meta",
                      status="partial", errors=["campaign c5: bad"], campaigns_synced=9)
        db.add(run)
        await db.commit()

    listed = await client.get("/api/sync-runs", params={"status": "partial"})
    assert [r["id"] for r in listed.json()] == [str(run.id)]
    one = await client.get(f"/api/sync-runs/{run.id}")
    assert one.json()["counts"]["campaigns"] == 9
    assert one.json()["errors"] == ["campaign c5: bad"]
    assert (await client.get(f"/api/sync-runs/{uuid.uuid4()}")).status_code == 404


@pytest.mark.anyio
async def test_changes_endpoints(client, session_factory, account):
    entity_id = uuid.uuid4()
    async with session_factory() as db:
        db.add(ChangeHistory(
            account_id=account.id, provider="meta", entity_type="campaign", entity_id=entity_id,
            change_type="status_change", field_name="status", old_value="active", new_value="paused",
        ))
        await db.commit()

    recent = await client.get("/api/changes", params={"account_id": str(account.id)})
    assert recent.json()[0]["field_name"] == "status"
    with_perf = await client.get(f"/api/changes/campaign/{entity_id}", params={"with_performance": True})
    assert with_perf.json()[0]["before"]["days"] == 0


@pytest.mark.anyio
async def test_accept_and_reject_recommendations(client, session_factory, account):
    async with session_factory() as db:
        rec = Recommendation(
            account_id=account.id, provider="meta", scope_type="ad", entity_id=uuid.uuid4(),
            playbook_key="ctr-optimization", type="recommend_creative_refresh", title="Refresh creative",
        )
        db.add(rec)
        await db.commit()

    pending = await client.get("/api/recommendations", params={"account_id": str(account.id), "status": "pending"})
    assert len(pending.json()) == 1

    accepted = await client.post(f"/api/recommendations/{rec.id}/accept")
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert accepted.json()["decided_at"] is not None

    assert (await client.post(f"/api/recommendations/{rec.id}/reject")).status_code == 409
    assert (await client.post(f"/api/recommendations/{uuid.uuid4()}/accept")).status_code == 404


# ── Cron ─────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_cron_requires_secret(client):
    with patch("adpulse.routers.cron.get_settings", return_value=Settings(cron_secret="s3cret")):
        missing = await client.post("/api/cron/entity-sync")
        wrong = await client.post("/api/cron/entity-sync", headers={"X-Cron-Secret": "nope"})
    assert missing.status_code == 401
    assert wrong.status_code == 401

    with patch("adpulse.routers.cron.get_settings", return_value=Settings(cron_secret="")):
        unconfigured = await client.post("/api/cron/entity-sync", headers={"X-Cron-Secret": "anything"})
    assert unconfigured.status_code == 500


@pytest.mark.anyio
async def test_cron_enqueues_and_deduplicates(client, session_factory, account, meta_connection):
    async with session_factory() as db:
        db.add(AdAccount(account_id=account.id, connection_id=meta_connection.id, provider="meta", external_id="42"))
        await db.commit()

    with patch("adpulse.routers.cron.get_settings", return_value=Settings(cron_secret="s3cret")):
        first = await client.post("/api/cron/full-insights", headers={"X-Cron-Secret": "s3cret"})
        second = await client.post("/api/cron/full-insights", headers={"Authorization": "Bearer s3cret"})
        recs = await client.post("/api/cron/recommendations", headers={"X-Cron-Secret": "s3cret"})

    assert first.json() == {"family": "full-insights", "jobs_added": 4}
    assert second.json() == {"family": "full-insights", "jobs_added": 0}
    assert recs.json()["jobs_added"] == 1
