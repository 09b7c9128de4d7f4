"""
Sync Service: orchestrates one sync run for a provider connection.

Order within a run is strict: ad account → campaigns → ad groups → ads
(→ insights), since each level links to its parent's stored row.

Failure policy:
- entity-level: logged, recorded in the run's error list, siblings continue
- level-level (a fetch fails): that ad account is aborted, other ad accounts continue
- run-level (auth expired, rate limited, invalid connection): the run is marked
  failed with an error category and the error propagates to the caller/queue
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from adpulse.errors import (
    AuthExpiredError,
    RateLimitedError,
    classify_exception,
)
from adpulse.models import (
    Account,
    Ad,
    AdAccount,
    AdGroup,
    Campaign,
    ProviderConnection,
    SyncRun,
    SyncRunStatus,
)
from adpulse.services import normalization_service as normalize
from adpulse.services.currency_service import CurrencyService
from adpulse.services.insight_service import InsightAggregator, InsightSyncResult
from adpulse.services.rate_limiter import RateLimiter, get_rate_limiter
from adpulse.services.reconciler_service import EntityReconciler, SyncContext
from adpulse.services.token_service import get_client_with_fresh_token, mark_connection_expired

logger = logging.getLogger(__name__)

# Errors that end the whole run instead of one ad account
RUN_LEVEL_ERRORS = (AuthExpiredError, RateLimitedError)

COUNT_FIELDS = {
    "account": "ad_accounts_synced",
    "campaign": "campaigns_synced",
    "ad_group": "ad_groups_synced",
    "ad": "ads_synced",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class SyncSummary:
    sync_run_id: Optional[uuid.UUID] = None
    status: str = SyncRunStatus.RUNNING.value
    counts: dict = field(default_factory=lambda: {k: 0 for k in (*COUNT_FIELDS, "insights")})
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    failed_accounts: list[str] = field(default_factory=list)
    error_category: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sync_run_id": str(self.sync_run_id) if self.sync_run_id else None,
            "status": self.status,
            "counts": dict(self.counts),
            "skipped": self.skipped,
            "errors": list(self.errors),
            "failed_accounts": list(self.failed_accounts),
            "error_category": self.error_category,
        }


class SyncService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        currency: CurrencyService,
        *,
        limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        insights_max_range_days: int = 90,
        client_factory: Optional[Callable] = None,
    ):
        self.session_factory = session_factory
        self.currency = currency
        self.limiter = limiter or get_rate_limiter()
        self.http_client = http_client
        self.reconciler = EntityReconciler(session_factory, currency)
        self.aggregator = InsightAggregator(session_factory, currency, insights_max_range_days)
        self._client_factory = client_factory or get_client_with_fresh_token

    # ── Sync-run bookkeeping ──────────────────────────────────────────

    async def _start_run(self, conn: ProviderConnection, sync_type: str) -> uuid.UUID:
        async with self.session_factory() as db:
            run = SyncRun(
                account_id=conn.account_id,
                connection_id=conn.id,
                provider=conn.provider,
                sync_type=sync_type,
                status=SyncRunStatus.RUNNING.value,
            )
            db.add(run)
            await db.commit()
            logger.info(f"Sync run {run.id} started: {conn.provider} connection {conn.id} ({sync_type})")
            return run.id

    async def _record_refused_run(self, conn: ProviderConnection, sync_type: str, error: AuthExpiredError) -> uuid.UUID:
        """A run that never started (invalid connection) still leaves a failed record."""
        async with self.session_factory() as db:
            now = _utcnow()
            run = SyncRun(
                account_id=conn.account_id,
                connection_id=conn.id,
                provider=conn.provider,
                sync_type=sync_type,
                status=SyncRunStatus.FAILED.value,
                started_at=now,
                completed_at=now,
                duration_seconds=0,
                errors=[error.message],
                error_message=error.message,
                error_category=error.category,
            )
            db.add(run)
            await db.commit()
            logger.warning(f"Sync run {run.id} refused: {error.message}")
            return run.id

    async def _finish_run(
        self,
        run_id: uuid.UUID,
        summary: SyncSummary,
        started: float,
        error_message: Optional[str] = None,
    ):
        async with self.session_factory() as db:
            run = await db.get(SyncRun, run_id)
            run.status = summary.status
            run.completed_at = _utcnow()
            run.duration_seconds = int(time.monotonic() - started)
            for level, column in COUNT_FIELDS.items():
                setattr(run, column, summary.counts[level])
            run.insights_synced = summary.counts["insights"]
            run.errors = summary.errors or None
            run.error_message = error_message or ("; ".join(summary.errors[:20]) if summary.errors else None)
            run.error_category = summary.error_category
            await db.commit()
        logger.info(
            f"Sync run {run_id} finished: {summary.status} counts={summary.counts} errors={len(summary.errors)}"
        )

    async def _load_connection(self, connection_id: uuid.UUID) -> tuple[ProviderConnection, Account]:
        async with self.session_factory() as db:
            conn = await db.get(ProviderConnection, connection_id)
            if conn is None:
                raise ValueError(f"Connection {connection_id} not found")
            account = await db.get(Account, conn.account_id)
            return conn, account

    async def _client_for(self, connection_id: uuid.UUID):
        """Refresh the token in its own transaction, so an expiry mark is committed even if the run fails."""
        async with self.session_factory() as db:
            conn = await db.get(ProviderConnection, connection_id)
            try:
                client = await self._client_factory(conn, db, http_client=self.http_client, limiter=self.limiter)
            finally:
                await db.commit()
            return client

    async def _mark_expired(self, connection_id: uuid.UUID, message: str):
        async with self.session_factory() as db:
            conn = await db.get(ProviderConnection, connection_id)
            if conn is not None and conn.is_active:
                await mark_connection_expired(db, conn, message)
            await db.commit()

    # ── Entity sync ───────────────────────────────────────────────────

    async def sync_connection(
        self,
        connection_id: uuid.UUID,
        sync_type: str = "full",
        insight_range: Optional[tuple[date, date]] = None,
        insight_levels: tuple[str, ...] = (),
    ) -> SyncSummary:
        """Full entity sync of every selected ad account on the connection."""
        conn, account = await self._load_connection(connection_id)
        if not conn.is_active:
            error = AuthExpiredError(
                f"Connection {connection_id} is inactive; reconnect required", provider=conn.provider
            )
            await self._record_refused_run(conn, sync_type, error)
            raise error

        # No run record until a slot is free; a rejection here defers the job
        async with self.limiter.permit(conn.provider, str(conn.id)):
            return await self._run_connection_sync(conn, account, sync_type, insight_range, insight_levels)

    async def _run_connection_sync(
        self,
        conn: ProviderConnection,
        account: Optional[Account],
        sync_type: str,
        insight_range: Optional[tuple[date, date]],
        insight_levels: tuple[str, ...],
    ) -> SyncSummary:
        summary = SyncSummary()
        started = time.monotonic()
        run_id = await self._start_run(conn, sync_type)
        summary.sync_run_id = run_id
        reporting_currency = (account.currency if account else None) or self.currency.settings.reporting_currency_default

        try:
            client = await self._client_for(conn.id)
            async with client:
                ad_account_ids = await self._resolve_ad_accounts(client, conn)
                for external_id in ad_account_ids:
                    try:
                        await self._sync_ad_account(
                            client, conn, external_id, reporting_currency, run_id, summary,
                            insight_range, insight_levels,
                        )
                    except RUN_LEVEL_ERRORS:
                        raise
                    except Exception as e:
                        error = classify_exception(e)
                        logger.error(f"Ad account {external_id} sync aborted: {error.message}")
                        summary.errors.append(f"Ad account {external_id}: {error.message}")
                        summary.failed_accounts.append(external_id)
                        summary.error_category = summary.error_category or error.category

            if summary.failed_accounts and len(summary.failed_accounts) == len(ad_account_ids):
                summary.status = SyncRunStatus.FAILED.value
            elif summary.errors:
                summary.status = SyncRunStatus.PARTIAL.value
                summary.error_category = summary.error_category or "validation"
            else:
                summary.status = SyncRunStatus.SUCCESS.value
        except Exception as e:
            error = classify_exception(e)
            summary.status = SyncRunStatus.FAILED.value
            summary.error_category = error.category
            summary.errors.append(error.message)
            if isinstance(error, AuthExpiredError):
                await self._mark_expired(conn.id, error.message)
            await self._finish_run(run_id, summary, started, error_message=error.message)
            await self._record_connection_result(conn.id, summary, error.message)
            raise

        await self._finish_run(run_id, summary, started)
        await self._record_connection_result(conn.id, summary, None)
        return summary

    async def _record_connection_result(self, connection_id: uuid.UUID, summary: SyncSummary, error: Optional[str]):
        async with self.session_factory() as db:
            conn = await db.get(ProviderConnection, connection_id)
            conn.last_sync_at = _utcnow()
            conn.last_sync_result = summary.to_dict()
            conn.last_error = error or (summary.errors[0] if summary.errors else None)
            await db.commit()

    async def _resolve_ad_accounts(self, client, conn: ProviderConnection) -> list[str]:
        """Selected ad accounts, or every account the token can see."""
        if conn.selected_account_ids:
            return [normalize.strip_act_prefix(a) for a in conn.selected_account_ids]
        if conn.provider == "meta":
            discovered = await client.get_ad_accounts()
            return [normalize.strip_act_prefix(a.get("account_id") or a.get("id")) for a in discovered if isinstance(a, dict)]
        return await client.list_accessible_customers()

    async def _stored_ids(self, model, ad_account_id: uuid.UUID) -> dict[str, uuid.UUID]:
        """external_id → id of rows already stored under the ad account."""
        async with self.session_factory() as db:
            if model is Campaign:
                query = select(Campaign.external_id, Campaign.id).where(Campaign.ad_account_id == ad_account_id)
            elif model is AdGroup:
                query = (
                    select(AdGroup.external_id, AdGroup.id)
                    .join(Campaign, AdGroup.campaign_id == Campaign.id)
                    .where(Campaign.ad_account_id == ad_account_id)
                )
            else:
                query = (
                    select(Ad.external_id, Ad.id)
                    .join(AdGroup, Ad.ad_group_id == AdGroup.id)
                    .join(Campaign, AdGroup.campaign_id == Campaign.id)
                    .where(Campaign.ad_account_id == ad_account_id)
                )
            result = await db.execute(query)
            return {ext: internal for ext, internal in result.all()}

    async def _reconcile_level(
        self,
        level: str,
        raws: list[Any],
        to_payload: Callable[[Any], normalize.EntityPayload],
        parents: Optional[dict[str, uuid.UUID]],
        ctx: SyncContext,
        summary: SyncSummary,
    ) -> dict[str, uuid.UUID]:
        """Reconcile every entity of one level; one bad entity never stops its siblings."""
        stored: dict[str, uuid.UUID] = {}
        for raw in raws:
            try:
                payload = to_payload(raw)
                parent_id = None
                if parents is not None:
                    parent_id = parents.get(payload.parent_external_id or "")
                    if parent_id is None:
                        logger.warning(
                            f"Skipping {level} {payload.external_id}: parent {payload.parent_external_id} not stored"
                        )
                        summary.skipped += 1
                        continue
                result = await self.reconciler.reconcile(payload, ctx, parent_id)
                stored[payload.external_id] = result.entity.id
                summary.counts[level] += 1
            except RUN_LEVEL_ERRORS:
                raise
            except Exception as e:
                error = classify_exception(e)
                ext = raw.get("id") if isinstance(raw, dict) else None
                logger.warning(f"Failed to reconcile {ctx.provider} {level} {ext}: {error.message}")
                summary.errors.append(f"{level} {ext}: {error.message}")
        return stored

    async def _sync_ad_account(
        self,
        client,
        conn: ProviderConnection,
        external_id: str,
        reporting_currency: str,
        run_id: uuid.UUID,
        summary: SyncSummary,
        insight_range: Optional[tuple[date, date]] = None,
        insight_levels: tuple[str, ...] = (),
    ):
        provider = conn.provider
        logger.info(f"Syncing {provider} ad account {external_id}")
        ctx = SyncContext(
            account_id=conn.account_id,
            provider=provider,
            reporting_currency=reporting_currency,
            connection_id=conn.id,
            sync_run_id=run_id,
        )

        # Account
        if provider == "meta":
            account_payload = normalize.normalize_meta_ad_account(await client.get_ad_account(external_id))
        else:
            account_payload = normalize.normalize_google_customer(await client.get_customer(external_id))
        ad_account = (await self.reconciler.reconcile(account_payload, ctx)).entity
        summary.counts["account"] += 1
        ctx.native_currency = account_payload.currency or reporting_currency

        # Campaigns
        raw_campaigns = await client.get_campaigns(external_id)
        to_campaign = normalize.normalize_meta_campaign if provider == "meta" else normalize.normalize_google_campaign
        campaigns = await self._stored_ids(Campaign, ad_account.id)
        campaigns.update(await self._reconcile_level(
            "campaign",
            raw_campaigns,
            lambda raw: to_campaign(raw, account_payload.external_id),
            {account_payload.external_id: ad_account.id},
            ctx,
            summary,
        ))

        # Ad groups
        if provider == "meta":
            raw_groups = await client.get_ad_sets(external_id)
            group_payload = normalize.normalize_meta_ad_set
        else:
            raw_groups = await client.get_ad_groups(external_id)
            group_payload = normalize.normalize_google_ad_group
        ad_groups = await self._stored_ids(AdGroup, ad_account.id)
        ad_groups.update(await self._reconcile_level("ad_group", raw_groups, group_payload, campaigns, ctx, summary))

        # Ads
        if provider == "meta":
            raw_ads = await client.get_ads(external_id)
            targeting = {
                str(g.get("id")): g.get("targeting")
                for g in raw_groups
                if isinstance(g, dict) and isinstance(g.get("targeting"), dict)
            }
            ad_payload = lambda raw: normalize.normalize_meta_ad(  # noqa: E731
                raw, targeting.get(str(raw.get("adset_id"))) if isinstance(raw, dict) else None
            )
        else:
            raw_ads = await client.get_ads(external_id)
            ad_payload = normalize.normalize_google_ad
        await self._reconcile_level("ad", raw_ads, ad_payload, ad_groups, ctx, summary)

        # Insights
        if insight_range and insight_levels:
            for level in insight_levels:
                result = await self.aggregator.aggregate(
                    client, ad_account, level, insight_range[0], insight_range[1], reporting_currency,
                )
                summary.counts["insights"] += result.upserted
                summary.errors.extend(result.errors)

    # ── Insight sync ──────────────────────────────────────────────────

    async def sync_insights(
        self,
        ad_account_id: uuid.UUID,
        level: str,
        start: date,
        end: date,
        sync_type: str = "full",
    ) -> InsightSyncResult:
        """Insights for one stored ad account and level; recorded as its own sync run."""
        async with self.session_factory() as db:
            ad_account = await db.get(AdAccount, ad_account_id)
            if ad_account is None:
                raise ValueError(f"Ad account {ad_account_id} not found")
            if ad_account.connection_id is None:
                raise AuthExpiredError(f"Ad account {ad_account.external_id} has no connection", provider=ad_account.provider)
        conn, account = await self._load_connection(ad_account.connection_id)
        if not conn.is_active:
            error = AuthExpiredError(
                f"Connection {conn.id} is inactive; reconnect required", provider=conn.provider
            )
            await self._record_refused_run(conn, sync_type, error)
            raise error

        async with self.limiter.permit(conn.provider, ad_account.external_id):
            return await self._run_insight_sync(conn, account, ad_account, level, start, end, sync_type)

    async def _run_insight_sync(
        self,
        conn: ProviderConnection,
        account: Optional[Account],
        ad_account: AdAccount,
        level: str,
        start: date,
        end: date,
        sync_type: str,
    ) -> InsightSyncResult:
        summary = SyncSummary()
        started = time.monotonic()
        run_id = await self._start_run(conn, sync_type)
        summary.sync_run_id = run_id
        reporting_currency = (account.currency if account else None) or self.currency.settings.reporting_currency_default

        try:
            client = await self._client_for(conn.id)
            async with client:
                result = await self.aggregator.aggregate(client, ad_account, level, start, end, reporting_currency)
        except Exception as e:
            error = classify_exception(e)
            summary.status = SyncRunStatus.FAILED.value
            summary.error_category = error.category
            summary.errors.append(error.message)
            if isinstance(error, AuthExpiredError):
                await self._mark_expired(conn.id, error.message)
            await self._finish_run(run_id, summary, started, error_message=error.message)
            raise

        summary.counts["insights"] = result.upserted
        summary.errors = list(result.errors)
        summary.status = SyncRunStatus.PARTIAL.value if result.errors else SyncRunStatus.SUCCESS.value
        if result.errors:
            summary.error_category = "validation"
        await self._finish_run(run_id, summary, started)
        return result
