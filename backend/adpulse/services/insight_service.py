"""
Insight Aggregator: daily performance metrics per entity.

Fetches insights for one ad account and level, splitting long ranges into
chunks the upstream accepts, flattens Meta's heterogeneous `actions` array
into fixed counters, converts money into the reporting currency and upserts
one row per (account, provider, entity_type, entity_id, date, window).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adpulse.errors import PayloadValidationError
from adpulse.google_ads_client import micros_to_units
from adpulse.models import Ad, AdAccount, AdGroup, Campaign, Insight
from adpulse.services.currency_service import CurrencyService
from adpulse.services.normalization_service import strip_act_prefix

logger = logging.getLogger(__name__)

DAILY_WINDOW = "1d"

# Upstream insights level → stored entity_type
LEVELS = {
    "account": "account",
    "campaign": "campaign",
    "adset": "ad_group",
    "ad": "ad",
}

# Foreign-key column on Insight filled for each entity type
INSIGHT_FK = {
    "account": "ad_account_id",
    "campaign": "campaign_id",
    "ad_group": "ad_group_id",
    "ad": "ad_id",
}

ENGAGEMENT_ACTIONS = {
    "like": "likes",
    "post_reaction": "likes",
    "comment": "comments",
    "post": "shares",
    "share": "shares",
    "save": "saves",
    "onsite_conversion.post_save": "saves",
    "video_view": "video_views",
}

# Each canonical conversion is counted once, from the first raw type present,
# most specific first.
CONVERSION_PRIORITY: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("purchase", ("purchase", "omni_purchase", "offsite_conversion.fb_pixel_purchase", "onsite_web_purchase")),
    ("lead", ("lead", "onsite_conversion.lead_grouped", "offsite_conversion.fb_pixel_lead", "leadgen_grouped")),
    ("complete_registration", ("complete_registration", "offsite_conversion.fb_pixel_complete_registration")),
    ("subscribe", ("subscribe", "offsite_conversion.fb_pixel_subscribe")),
    ("start_trial", ("start_trial", "offsite_conversion.fb_pixel_start_trial")),
    ("contact", ("contact", "offsite_conversion.fb_pixel_contact")),
    ("schedule", ("schedule", "offsite_conversion.fb_pixel_schedule")),
    ("submit_application", ("submit_application", "offsite_conversion.fb_pixel_submit_application")),
    ("custom", ("offsite_conversion.fb_pixel_custom",)),
)

VIDEO_RETENTION_FIELDS = {
    "video_p25_watched_actions": "video_p25_watched",
    "video_p50_watched_actions": "video_p50_watched",
    "video_p75_watched_actions": "video_p75_watched",
    "video_p100_watched_actions": "video_p100_watched",
}

RANKING_FIELDS = ("quality_ranking", "engagement_rate_ranking", "conversion_rate_ranking")


def split_date_range(start: date, end: date, max_days: int) -> list[tuple[date, date]]:
    """Inclusive [start, end] into consecutive inclusive chunks of at most max_days days."""
    if end < start:
        raise ValueError(f"end {end} is before start {start}")
    if max_days < 1:
        raise ValueError("max_days must be at least 1")
    ranges = []
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + timedelta(days=max_days - 1), end)
        ranges.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return ranges


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _count(value: Any) -> int:
    return int(round(_number(value)))


def _action_values(actions: Any) -> dict[str, float]:
    """action_type → value. The first occurrence of a type wins."""
    values: dict[str, float] = {}
    if not isinstance(actions, list):
        return values
    for action in actions:
        if not isinstance(action, dict):
            continue
        action_type = action.get("action_type") or action.get("type")
        if action_type and action_type not in values:
            values[str(action_type)] = _number(action.get("value"))
    return values


def count_conversions(actions: Any) -> float:
    """Sum of canonical conversions, each counted from its highest-priority raw type."""
    values = _action_values(actions)
    total = 0.0
    seen: set[str] = set()
    for canonical, raw_types in CONVERSION_PRIORITY:
        for raw_type in raw_types:
            if canonical not in seen and raw_type in values:
                total += values[raw_type]
                seen.add(canonical)
    return total


def normalize_actions(actions: Any) -> dict:
    """Flatten a Meta `actions` array into fixed counters."""
    counters = {"likes": 0, "comments": 0, "shares": 0, "saves": 0, "video_views": 0}
    for action_type, value in _action_values(actions).items():
        target = ENGAGEMENT_ACTIONS.get(action_type)
        if target:
            counters[target] += _count(value)
    conversions = count_conversions(actions)
    counters["conversions"] = int(conversions) if conversions.is_integer() else round(conversions, 2)
    return counters


def parse_meta_insight(row: dict) -> dict:
    """One Meta daily insight row → metrics in the account's native currency."""
    metrics = {
        "impressions": _count(row.get("impressions")),
        "clicks": _count(row.get("clicks")),
        "spend": _number(row.get("spend")),
        "cpc": _number(row.get("cpc")),
        "cpm": _number(row.get("cpm")),
        "ctr": _number(row.get("ctr")),
        "reach": _count(row.get("reach")),
        "frequency": _number(row.get("frequency")),
    }
    metrics.update(normalize_actions(row.get("actions")))
    for source, target in VIDEO_RETENTION_FIELDS.items():
        entries = row.get(source)
        first = entries[0] if isinstance(entries, list) and entries and isinstance(entries[0], dict) else {}
        metrics[target] = _count(first.get("value"))
    for name in RANKING_FIELDS:
        if row.get(name):
            metrics[name] = row[name]
    return metrics


def parse_google_insight(row: dict) -> dict:
    """One Google Ads metrics row (camelCase REST JSON) → metrics in native currency."""
    m = row.get("metrics") if isinstance(row.get("metrics"), dict) else {}
    impressions = _count(m.get("impressions"))
    video_views = _count(m.get("videoViews"))
    metrics = {
        "impressions": impressions,
        "clicks": _count(m.get("clicks")),
        "spend": micros_to_units(m.get("costMicros")) or 0.0,
        "cpc": micros_to_units(m.get("averageCpc")) or 0.0,
        "cpm": micros_to_units(m.get("averageCpm")) or 0.0,
        # Google reports ctr as a fraction; stored as percent like Meta
        "ctr": round(_number(m.get("ctr")) * 100, 4),
        "conversions": round(_number(m.get("conversions")), 2),
        "video_views": video_views,
    }
    for quartile in ("25", "50", "75", "100"):
        rate = _number(m.get(f"videoQuartileP{quartile}Rate"))
        metrics[f"video_p{quartile}_watched"] = int(round(rate * impressions)) if rate else 0
    return metrics


def meta_row_external_id(row: dict, level: str) -> Optional[str]:
    key = {"account": "account_id", "campaign": "campaign_id", "adset": "adset_id", "ad": "ad_id"}[level]
    value = row.get(key)
    if value in (None, ""):
        return None
    return strip_act_prefix(value) if level == "account" else str(value)


def google_row_external_id(row: dict, level: str) -> Optional[str]:
    path = {
        "account": ("customer", "id"),
        "campaign": ("campaign", "id"),
        "adset": ("adGroup", "id"),
        "ad": ("adGroupAd", "ad", "id"),
    }[level]
    node: Any = row
    for key in path:
        node = node.get(key) if isinstance(node, dict) else None
    return str(node) if node not in (None, "") else None


def row_date(row: dict, provider: str) -> date:
    raw = row.get("date_start") if provider == "meta" else (row.get("segments") or {}).get("date")
    if not raw:
        raise PayloadValidationError(f"{provider} insight row has no date", provider=provider)
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError as e:
        raise PayloadValidationError(f"{provider} insight date {raw!r} is invalid", provider=provider) from e


@dataclass
class InsightSyncResult:
    level: str
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    ranges: list[tuple[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


async def upsert_insight(
    db: AsyncSession,
    *,
    account_id: uuid.UUID,
    provider: str,
    entity_type: str,
    entity_id: uuid.UUID,
    day: date,
    metrics: dict,
    window: str = DAILY_WINDOW,
    ad_account_id: Optional[uuid.UUID] = None,
) -> Insight:
    """Insert or overwrite the row for (entity, day, window)."""
    result = await db.execute(
        select(Insight).where(
            Insight.account_id == account_id,
            Insight.provider == provider,
            Insight.entity_type == entity_type,
            Insight.entity_id == entity_id,
            Insight.date == day,
            Insight.window == window,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = Insight(
            account_id=account_id,
            provider=provider,
            entity_type=entity_type,
            entity_id=entity_id,
            date=day,
            window=window,
            metrics=metrics,
            ad_account_id=ad_account_id,
        )
        setattr(row, INSIGHT_FK[entity_type], entity_id)
        db.add(row)
    else:
        row.metrics = metrics
    await db.flush()
    return row


class InsightAggregator:
    def __init__(self, session_factory: async_sessionmaker, currency: CurrencyService, max_range_days: int = 90):
        self.session_factory = session_factory
        self.currency = currency
        self.max_range_days = max_range_days

    async def _entity_ids(self, ad_account: AdAccount, level: str) -> dict[str, uuid.UUID]:
        """external_id → internal id for every stored entity of `level` under the ad account."""
        entity_type = LEVELS[level]
        if entity_type == "account":
            return {ad_account.external_id: ad_account.id}

        async with self.session_factory() as db:
            if entity_type == "campaign":
                query = select(Campaign.external_id, Campaign.id).where(Campaign.ad_account_id == ad_account.id)
            elif entity_type == "ad_group":
                query = (
                    select(AdGroup.external_id, AdGroup.id)
                    .join(Campaign, AdGroup.campaign_id == Campaign.id)
                    .where(Campaign.ad_account_id == ad_account.id)
                )
            else:
                query = (
                    select(Ad.external_id, Ad.id)
                    .join(AdGroup, Ad.ad_group_id == AdGroup.id)
                    .join(Campaign, AdGroup.campaign_id == Campaign.id)
                    .where(Campaign.ad_account_id == ad_account.id)
                )
            result = await db.execute(query)
            return {ext: internal for ext, internal in result.all()}

    async def _convert_metrics(self, metrics: dict, native: str, reporting: str) -> dict:
        spend = await self.currency.convert_money(metrics.get("spend", 0.0), native, reporting)
        cpc = await self.currency.convert_money(metrics.get("cpc", 0.0), native, reporting)
        cpm = await self.currency.convert_money(metrics.get("cpm", 0.0), native, reporting)
        converted = dict(metrics)
        converted.update(
            spend=spend.amount,
            cpc=cpc.amount,
            cpm=cpm.amount,
            currency=spend.currency,
            original_spend=spend.original_amount,
            original_currency=spend.original_currency,
        )
        if spend.note:
            converted["currency_note"] = spend.note
        return converted

    async def _store_chunk(
        self,
        rows: list[tuple[uuid.UUID, date, dict]],
        ad_account: AdAccount,
        entity_type: str,
    ) -> int:
        async with self.session_factory() as db:
            async with db.begin():
                for entity_id, day, metrics in rows:
                    await upsert_insight(
                        db,
                        account_id=ad_account.account_id,
                        provider=ad_account.provider,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        day=day,
                        metrics=metrics,
                        ad_account_id=ad_account.id,
                    )
        return len(rows)

    async def aggregate(
        self,
        client,
        ad_account: AdAccount,
        level: str,
        start: date,
        end: date,
        reporting_currency: str,
    ) -> InsightSyncResult:
        """Fetch and upsert daily insights for one ad account and level over [start, end]."""
        if level not in LEVELS:
            raise ValueError(f"Unsupported insights level: {level}")
        entity_type = LEVELS[level]
        provider = ad_account.provider
        native = ad_account.currency or reporting_currency
        result = InsightSyncResult(level=level)
        entity_ids = await self._entity_ids(ad_account, level)
        external_id = meta_row_external_id if provider == "meta" else google_row_external_id
        parse = parse_meta_insight if provider == "meta" else parse_google_insight

        for since, until in split_date_range(start, end, self.max_range_days):
            result.ranges.append((since.isoformat(), until.isoformat()))
            raw_rows = await client.get_insights(ad_account.external_id, level, since, until)
            result.fetched += len(raw_rows)

            prepared: dict[tuple[uuid.UUID, date], dict] = {}
            for raw in raw_rows:
                try:
                    if not isinstance(raw, dict):
                        raise PayloadValidationError(f"{provider} insight row is not an object", provider=provider)
                    ext = external_id(raw, level)
                    entity_id = entity_ids.get(ext) if ext else None
                    if entity_id is None:
                        result.skipped += 1
                        continue
                    day = row_date(raw, provider)
                    metrics = await self._convert_metrics(parse(raw), native, reporting_currency)
                    prepared[(entity_id, day)] = metrics
                except PayloadValidationError as e:
                    logger.warning(f"Skipping {provider} {level} insight row: {e.message}")
                    result.errors.append(e.message)

            rows = [(entity_id, day, metrics) for (entity_id, day), metrics in prepared.items()]
            if not rows:
                continue
            try:
                result.upserted += await self._store_chunk(rows, ad_account, entity_type)
            except IntegrityError:
                # A concurrent job inserted some of the same keys; the retry sees them and updates
                logger.warning(f"Insight upsert race for {ad_account.external_id}/{level}; retrying chunk")
                result.upserted += await self._store_chunk(rows, ad_account, entity_type)

        logger.info(
            f"Insights {provider}/{ad_account.external_id}/{level} {start}..{end}: "
            f"{result.upserted} upserted, {result.skipped} skipped, {len(result.errors)} errors "
            f"across {len(result.ranges)} range(s)"
        )
        return result
