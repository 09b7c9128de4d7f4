"""
Tests for the job scheduler: job keys, deduplicated triggers and cron state.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from adpulse.config import Settings
from adpulse.jobs.scheduler import (
    JobScheduler,
    build_delta_insights_jobs,
    build_entity_sync_jobs,
    build_full_insights_jobs,
    build_recommendation_jobs,
    half_hour_slot,
)
from adpulse.models import AdAccount, ProviderConnection, QueueJob


NOW = datetime(2024, 5, 1, 10, 15)


@pytest.fixture
async def active_ad_account(session_factory, account, meta_connection):
    async with session_factory() as db:
        ad_account = AdAccount(
            account_id=account.id, connection_id=meta_connection.id, provider="meta", external_id="42",
        )
        db.add(ad_account)
        # an expired connection and its ad account are never scheduled
        dead = ProviderConnection(
            account_id=account.id, provider="google", name="Old", access_token="x", is_active=False, status="expired",
        )
        db.add(dead)
        await db.flush()
        db.add(AdAccount(account_id=account.id, connection_id=dead.id, provider="google", external_id="99"))
        await db.commit()
        return ad_account


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_half_hour_slot():
    assert half_hour_slot(datetime(2024, 5, 1, 10, 15)) == "2024-05-01T1000"
    assert half_hour_slot(datetime(2024, 5, 1, 10, 45)) == "2024-05-01T1030"


@pytest.mark.anyio
async def test_job_builders(session_factory, account, meta_connection, active_ad_account):
    async with session_factory() as db:
        entity_jobs = await build_entity_sync_jobs(db, NOW)
        full_jobs = await build_full_insights_jobs(db, NOW, lookback_days=30)
        delta_jobs = await build_delta_insights_jobs(db, NOW, lookback_days=1)
        rec_jobs = await build_recommendation_jobs(db, NOW)

    assert [j.job_key for j in entity_jobs] == [f"entity-sync-{meta_connection.id}-2024-05-01"]
    assert entity_jobs[0].queue == "entity-sync"

    assert [j.payload["level"] for j in full_jobs] == ["account", "campaign", "adset", "ad"]
    assert full_jobs[0].payload["start"] == "2024-04-01"
    assert full_jobs[0].payload["end"] == "2024-05-01"
    assert full_jobs[1].job_key == f"full-insights-{active_ad_account.id}-campaign-2024-05-01"

    assert [j.payload["level"] for j in delta_jobs] == ["campaign", "ad"]
    assert delta_jobs[0].payload["start"] == "2024-04-30"
    assert delta_jobs[0].payload["sync_type"] == "delta"
    assert delta_jobs[0].job_key.endswith("2024-05-01T1000")

    assert [j.payload["account_id"] for j in rec_jobs] == [str(account.id)]


@pytest.mark.anyio
async def test_trigger_twice_in_same_period_adds_nothing(session_factory, active_ad_account):
    clock = Clock(NOW)
    scheduler = JobScheduler(session_factory=session_factory, settings=Settings(), clock=clock)

    assert await scheduler.trigger_entity_sync() == 1
    assert await scheduler.trigger_entity_sync() == 0
    assert await scheduler.trigger_delta_sync() == 2
    assert await scheduler.trigger_delta_sync() == 0

    clock.now = NOW + timedelta(minutes=30)
    assert await scheduler.trigger_delta_sync() == 2
    assert await scheduler.trigger("full-insights") == 4
    assert await scheduler.trigger("recommendations") == 1

    async with session_factory() as db:
        jobs = (await db.execute(select(QueueJob))).scalars().all()
    assert len(jobs) == 10
    assert {j.queue for j in jobs} == {"entity-sync", "insights-sync", "recommendations"}


@pytest.mark.anyio
async def test_unknown_family(session_factory):
    scheduler = JobScheduler(session_factory=session_factory, settings=Settings())
    with pytest.raises(ValueError, match="Unknown job family"):
        await scheduler.trigger("weekly-report")


@pytest.mark.anyio
async def test_start_stop_state(session_factory, caplog):
    scheduler = JobScheduler(session_factory=session_factory, settings=Settings())
    assert scheduler.state == "stopped"
    with caplog.at_level(logging.WARNING, logger="adpulse.jobs.scheduler"):
        scheduler.stop()
        scheduler.start()
        scheduler.start()
        assert scheduler.state == "running"
        assert {job.id for job in scheduler.scheduler.get_jobs()} == {
            "entity-sync", "full-insights", "delta-insights", "recommendations",
        }
        scheduler.stop()
    assert scheduler.state == "stopped"
    assert "already running" in caplog.text
    assert "not running" in caplog.text


def test_next_fire_times_follow_cron_patterns():
    scheduler = JobScheduler(settings=Settings(delta_insights_cron="*/30 * * * *"))
    times = scheduler.next_fire_times()
    now = datetime.now(timezone.utc)

    assert set(times) == {"entity-sync", "full-insights", "delta-insights", "recommendations"}
    assert all(t > now for t in times.values())
    assert times["delta-insights"] - now <= timedelta(minutes=30)
    assert times["delta-insights"].minute in (0, 30)
    assert times["entity-sync"].hour == 2
    assert scheduler.status()["state"] == "stopped"
