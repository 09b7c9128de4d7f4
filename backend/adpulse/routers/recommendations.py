"""Recommendations Router: list playbook proposals and record decisions."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.database import get_db
from adpulse.models import Recommendation, RecommendationStatus
from adpulse.services.recommendation_service import decide, list_recommendations

router = APIRouter()


def _rec_to_response(rec: Recommendation) -> dict:
    return {
        "id": rec.id,
        "account_id": rec.account_id,
        "provider": rec.provider,
        "scope_type": rec.scope_type,
        "entity_id": rec.entity_id,
        "playbook_key": rec.playbook_key,
        "type": rec.type,
        "priority": rec.priority,
        "category": rec.category,
        "status": rec.status,
        "title": rec.title,
        "description": rec.description,
        "estimated_impact": rec.estimated_impact,
        "payload": rec.payload,
        "confidence": rec.confidence,
        "created_at": rec.created_at,
        "decided_at": rec.decided_at,
    }


@router.get("")
async def get_recommendations(
    account_id: UUID,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    recs = await list_recommendations(db, account_id, status=status, limit=limit)
    return [_rec_to_response(r) for r in recs]


async def _decide(db: AsyncSession, recommendation_id: UUID, status: str) -> dict:
    try:
        rec = await decide(db, recommendation_id, status)
    except LookupError:
        raise HTTPException(404, "Recommendation not found")
    except ValueError as e:
        raise HTTPException(409, str(e))
    return _rec_to_response(rec)


@router.post("/{recommendation_id}/accept")
async def accept_recommendation(recommendation_id: UUID, db: AsyncSession = Depends(get_db)):
    return await _decide(db, recommendation_id, RecommendationStatus.ACCEPTED.value)


@router.post("/{recommendation_id}/reject")
async def reject_recommendation(recommendation_id: UUID, db: AsyncSession = Depends(get_db)):
    return await _decide(db, recommendation_id, RecommendationStatus.REJECTED.value)
