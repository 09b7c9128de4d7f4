"""
Recommendation Service: turns stored insight history into playbook proposals.

Per run and account:
1. expire pending recommendations older than recommendation_expiry_days
2. group the last lookback_days of daily insights by entity (newest first)
3. aggregate each metric (latest, 7/14/30-day averages, trend)
4. evaluate every applicable enabled playbook; each matched action is a candidate
5. persist candidates unless a pending one with the same (entity, type) exists

An evaluation error for one entity is logged and the run continues.
"""

import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adpulse.models import Campaign, Insight, Recommendation, RecommendationStatus
from adpulse.services.playbook_service import Playbook, PlaybookAction, PlaybookRepository, evaluate_playbook

logger = logging.getLogger(__name__)

RECOMMENDATION_LEVELS = ("campaign", "ad_group", "ad")
CREATIVE_REFRESH_CTR_LIFT = 1.25

_TOKEN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  METRIC AGGREGATES
# ══════════════════════════════════════════════════════════════════════

def _numeric(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _average(values: list[float]) -> float:
    return sum(values) / len(values)


def format_trend(old: float, new: float) -> str:
    if old == 0:
        return "N/A"
    return f"{(new - old) / old * 100:.2f}%"


def aggregate_metrics(rows: list[dict]) -> dict:
    """
    `rows` are daily metric bags ordered newest first. For each numeric key m:
    m (latest), m_7d / m_14d (average of the newest 7 / 14 rows), m_30d
    (average of all rows) and m_trend (oldest vs newest, two or more rows).
    """
    series: dict[str, list[float]] = defaultdict(list)
    for metrics in rows:
        for key, value in (metrics or {}).items():
            if _numeric(value):
                series[key].append(value)

    result: dict[str, Any] = {}
    for key, values in series.items():
        result[key] = values[0]
        result[f"{key}_7d"] = _average(values[:7])
        result[f"{key}_14d"] = _average(values[:14])
        result[f"{key}_30d"] = _average(values)
        if len(values) >= 2:
            result[f"{key}_trend"] = format_trend(values[-1], values[0])
    return result


def interpolate_template(template: str, metrics: dict) -> str:
    """Replace {{key}} tokens with aggregate values; unknown keys become N/A."""
    def _sub(match):
        value = metrics.get(match.group(1))
        if value is None:
            return "N/A"
        if isinstance(value, float):
            return f"{value:.2f}"
        return str(value)

    return _TOKEN.sub(_sub, template or "")


# ══════════════════════════════════════════════════════════════════════
#  CANDIDATES
# ══════════════════════════════════════════════════════════════════════

def estimate_impact(action: PlaybookAction, latest: dict) -> dict:
    """
    Point estimate of the action's effect from the latest day's metrics.
    Illustrative projections, not forecasts.
    """
    change_pct = action.change_pct or 0
    if action.type == "recommend_budget_change":
        current = latest.get("conversions") or 0
        return {
            "metric": "conversions",
            "current": current,
            "projected": round(current * (1 + change_pct / 100)),
            "change": f"{change_pct:+g}%",
            "kind": "point_estimate",
        }
    if action.type == "recommend_pause":
        spend = latest.get("spend") or 0
        return {
            "metric": "spend",
            "current": spend,
            "projected": 0,
            "change": "-100%",
            "savings": spend,
            "kind": "point_estimate",
        }
    if action.type == "recommend_creative_refresh":
        ctr = latest.get("ctr") or 0
        return {
            "metric": "ctr",
            "current": ctr,
            "projected": round(ctr * CREATIVE_REFRESH_CTR_LIFT, 4),
            "change": "+25%",
            "kind": "point_estimate",
        }
    return {
        "metric": "performance",
        "current": None,
        "projected": None,
        "change": "qualitative improvement",
        "kind": "qualitative",
    }


def category_for(action_type: str) -> str:
    if "budget" in action_type:
        return "budget"
    if "creative" in action_type:
        return "creative"
    if "audience" in action_type or "target" in action_type:
        return "targeting"
    if "bid" in action_type:
        return "bidding"
    if "schedule" in action_type or "daypart" in action_type:
        return "scheduling"
    return "performance"


@dataclass
class RecommendationCandidate:
    type: str
    priority: str
    category: str
    title: str
    description: str
    estimated_impact: dict
    payload: dict
    confidence: float
    playbook_key: str


def build_candidates(playbook: Playbook, metrics: dict, latest: dict) -> list[RecommendationCandidate]:
    """One candidate per action when the playbook matches, otherwise none."""
    matched, confidence = evaluate_playbook(playbook, metrics)
    if not matched:
        return []
    description = interpolate_template(playbook.explanation_template, metrics)
    candidates = []
    for action in playbook.actions:
        candidates.append(RecommendationCandidate(
            type=action.type,
            priority=playbook.priority,
            category=category_for(action.type),
            title=playbook.name,
            description=description,
            estimated_impact=estimate_impact(action, latest),
            payload={
                "suggested_action": {
                    "type": action.type,
                    "target": action.target,
                    "change_pct": action.change_pct,
                    **action.params,
                },
                "playbook_key": playbook.key,
                "playbook_name": playbook.name,
                "risk_notes": playbook.risk_notes,
                "guardrails": action.guardrails,
            },
            confidence=confidence,
            playbook_key=playbook.key,
        ))
    return candidates


# ══════════════════════════════════════════════════════════════════════
#  GENERATION
# ══════════════════════════════════════════════════════════════════════

@dataclass
class GenerationSummary:
    account_id: uuid.UUID
    entities_evaluated: int = 0
    created: int = 0
    duplicates_skipped: int = 0
    expired: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "account_id": str(self.account_id),
            "entities_evaluated": self.entities_evaluated,
            "created": self.created,
            "duplicates_skipped": self.duplicates_skipped,
            "expired": self.expired,
            "errors": self.errors,
        }


async def find_pending(db: AsyncSession, account_id: uuid.UUID, entity_id: uuid.UUID, rec_type: str) -> Optional[Recommendation]:
    result = await db.execute(
        select(Recommendation).where(
            Recommendation.account_id == account_id,
            Recommendation.entity_id == entity_id,
            Recommendation.type == rec_type,
            Recommendation.status == RecommendationStatus.PENDING.value,
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def expire_stale(db: AsyncSession, account_id: uuid.UUID, expiry_days: int, now: Optional[datetime] = None) -> int:
    cutoff = (now or _utcnow()) - timedelta(days=expiry_days)
    result = await db.execute(
        update(Recommendation)
        .where(
            Recommendation.account_id == account_id,
            Recommendation.status == RecommendationStatus.PENDING.value,
            Recommendation.created_at < cutoff,
        )
        .values(status=RecommendationStatus.EXPIRED.value, updated_at=_utcnow())
    )
    return result.rowcount or 0


class RecommendationService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        repository: PlaybookRepository,
        *,
        lookback_days: int = 30,
        expiry_days: int = 14,
    ):
        self.session_factory = session_factory
        self.repository = repository
        self.lookback_days = lookback_days
        self.expiry_days = expiry_days

    async def _load_history(
        self,
        account_id: uuid.UUID,
        ad_account_id: Optional[uuid.UUID],
        today: date,
    ) -> tuple[dict, dict]:
        """Daily metric rows per (provider, level, entity_id), newest first, plus campaign objectives."""
        since = today - timedelta(days=self.lookback_days)
        query = (
            select(Insight)
            .where(
                Insight.account_id == account_id,
                Insight.entity_type.in_(RECOMMENDATION_LEVELS),
                Insight.window == "1d",
                Insight.date >= since,
            )
            .order_by(Insight.date.desc())
        )
        if ad_account_id is not None:
            query = query.where(Insight.ad_account_id == ad_account_id)

        async with self.session_factory() as db:
            insights = (await db.execute(query)).scalars().all()
            objectives = dict((await db.execute(
                select(Campaign.id, Campaign.objective).where(Campaign.account_id == account_id)
            )).all())

        history: dict[tuple, list[dict]] = defaultdict(list)
        for row in insights:
            history[(row.provider, row.entity_type, row.entity_id)].append(row.metrics or {})
        return history, objectives

    async def generate(
        self,
        account_id: uuid.UUID,
        ad_account_id: Optional[uuid.UUID] = None,
        playbook_keys: Optional[list[str]] = None,
        today: Optional[date] = None,
    ) -> GenerationSummary:
        summary = GenerationSummary(account_id=account_id)

        async with self.session_factory() as db:
            async with db.begin():
                summary.expired = await expire_stale(db, account_id, self.expiry_days)
        if summary.expired:
            logger.info(f"Expired {summary.expired} stale recommendation(s) for account {account_id}")

        if playbook_keys:
            playbooks = [p for p in (self.repository.get(k) for k in playbook_keys) if p and p.enabled]
        else:
            playbooks = self.repository.enabled()
        if not playbooks:
            logger.info("No enabled playbooks; nothing to evaluate")
            return summary

        history, objectives = await self._load_history(account_id, ad_account_id, today or _utcnow().date())

        for (provider, level, entity_id), rows in history.items():
            summary.entities_evaluated += 1
            try:
                metrics = aggregate_metrics(rows)
                candidates = []
                for playbook in playbooks:
                    if playbook.applies(provider, level, objectives.get(entity_id)):
                        candidates.extend(build_candidates(playbook, metrics, rows[0]))
                if candidates:
                    await self._persist(account_id, provider, level, entity_id, candidates, summary)
            except Exception as e:
                logger.error(f"Recommendation evaluation failed for {level} {entity_id}: {e}", exc_info=True)
                summary.errors.append({"entity_type": level, "entity_id": str(entity_id), "message": str(e)})

        logger.info(
            f"Recommendations for account {account_id}: {summary.created} created, "
            f"{summary.duplicates_skipped} duplicate(s) skipped over {summary.entities_evaluated} entities"
        )
        return summary

    async def _persist(
        self,
        account_id: uuid.UUID,
        provider: str,
        level: str,
        entity_id: uuid.UUID,
        candidates: list[RecommendationCandidate],
        summary: GenerationSummary,
    ):
        async with self.session_factory() as db:
            async with db.begin():
                for candidate in candidates:
                    if await find_pending(db, account_id, entity_id, candidate.type):
                        summary.duplicates_skipped += 1
                        continue
                    db.add(Recommendation(
                        account_id=account_id,
                        provider=provider,
                        scope_type=level,
                        entity_id=entity_id,
                        playbook_key=candidate.playbook_key,
                        type=candidate.type,
                        priority=candidate.priority,
                        category=candidate.category,
                        status=RecommendationStatus.PENDING.value,
                        title=candidate.title,
                        description=candidate.description,
                        estimated_impact=candidate.estimated_impact,
                        payload=candidate.payload,
                        confidence=candidate.confidence,
                    ))
                    # flush so a second candidate of the same type sees this row
                    await db.flush()
                    summary.created += 1


# ══════════════════════════════════════════════════════════════════════
#  READS AND DECISIONS
# ══════════════════════════════════════════════════════════════════════

async def list_recommendations(
    db: AsyncSession,
    account_id: uuid.UUID,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[Recommendation]:
    query = select(Recommendation).where(Recommendation.account_id == account_id)
    if status:
        query = query.where(Recommendation.status == status)
    result = await db.execute(query.order_by(Recommendation.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def decide(db: AsyncSession, recommendation_id: uuid.UUID, status: str) -> Recommendation:
    """pending -> accepted | rejected. Raises LookupError / ValueError otherwise."""
    if status not in (RecommendationStatus.ACCEPTED.value, RecommendationStatus.REJECTED.value):
        raise ValueError(f"Cannot move a recommendation to {status}")
    rec = await db.get(Recommendation, recommendation_id)
    if rec is None:
        raise LookupError(f"Recommendation {recommendation_id} not found")
    if rec.status != RecommendationStatus.PENDING.value:
        raise ValueError(f"Recommendation is {rec.status}, only pending ones can be decided")
    rec.status = status
    rec.decided_at = _utcnow()
    rec.updated_at = rec.decided_at
    await db.flush()
    logger.info(f"Recommendation {rec.id} {status}")
    return rec
