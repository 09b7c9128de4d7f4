"""
Connections Router: provider connections (Meta / Google Ads) and manual syncs.
Tokens are stored encrypted and only ever returned masked.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.crypto import encrypt_token, mask_token
from adpulse.database import async_session, get_db
from adpulse.errors import SyncError
from adpulse.models import Account, ConnectionStatus, Provider, ProviderConnection
from adpulse.services.currency_service import CurrencyService
from adpulse.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class ConnectionCreate(BaseModel):
    provider: Provider
    name: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    account_id: Optional[UUID] = None
    account_name: Optional[str] = None
    currency: str = "USD"
    selected_account_ids: list[str] = Field(default_factory=list)


class ConnectionUpdate(BaseModel):
    name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    selected_account_ids: Optional[list[str]] = None
    is_active: Optional[bool] = None


def _conn_to_response(conn: ProviderConnection) -> dict:
    return {
        "id": conn.id,
        "account_id": conn.account_id,
        "provider": conn.provider,
        "name": conn.name,
        "access_token": mask_token(conn.access_token),
        "has_refresh_token": bool(conn.refresh_token),
        "expires_at": conn.expires_at,
        "is_active": conn.is_active,
        "status": conn.status,
        "selected_account_ids": conn.selected_account_ids or [],
        "last_sync_at": conn.last_sync_at,
        "last_error": conn.last_error,
        "last_sync_result": conn.last_sync_result,
        "created_at": conn.created_at,
        "updated_at": conn.updated_at,
    }


async def _get_connection(db: AsyncSession, connection_id: UUID) -> ProviderConnection:
    conn = await db.get(ProviderConnection, connection_id)
    if not conn:
        raise HTTPException(404, "Connection not found")
    return conn


def get_sync_service() -> SyncService:
    return SyncService(async_session, CurrencyService())


# ── Endpoints ────────────────────────────────────────────────────────
@router.get("")
async def list_connections(account_id: Optional[UUID] = None, db: AsyncSession = Depends(get_db)):
    query = select(ProviderConnection).order_by(ProviderConnection.created_at.desc())
    if account_id:
        query = query.where(ProviderConnection.account_id == account_id)
    result = await db.execute(query)
    return [_conn_to_response(c) for c in result.scalars().all()]


@router.post("")
async def create_connection(payload: ConnectionCreate, db: AsyncSession = Depends(get_db)):
    if payload.account_id:
        account = await db.get(Account, payload.account_id)
        if not account:
            raise HTTPException(404, "Account not found")
    else:
        account = Account(name=payload.account_name or payload.name, currency=payload.currency.upper())
        db.add(account)
        await db.flush()

    conn = ProviderConnection(
        account_id=account.id,
        provider=payload.provider.value,
        name=payload.name,
        access_token=encrypt_token(payload.access_token),
        refresh_token=encrypt_token(payload.refresh_token),
        expires_at=payload.expires_at,
        is_active=True,
        status=ConnectionStatus.ACTIVE.value,
        selected_account_ids=payload.selected_account_ids,
    )
    db.add(conn)
    await db.flush()
    logger.info(f"Created {conn.provider} connection {conn.id} for account {account.id}")
    return _conn_to_response(conn)


@router.get("/{connection_id}")
async def get_connection(connection_id: UUID, db: AsyncSession = Depends(get_db)):
    return _conn_to_response(await _get_connection(db, connection_id))


@router.patch("/{connection_id}")
async def update_connection(connection_id: UUID, payload: ConnectionUpdate, db: AsyncSession = Depends(get_db)):
    conn = await _get_connection(db, connection_id)
    if payload.name is not None:
        conn.name = payload.name
    if payload.access_token:
        conn.access_token = encrypt_token(payload.access_token)
        # new token means the user re-authenticated
        conn.is_active = True
        conn.status = ConnectionStatus.ACTIVE.value
        conn.last_error = None
    if payload.refresh_token:
        conn.refresh_token = encrypt_token(payload.refresh_token)
    if payload.expires_at is not None:
        conn.expires_at = payload.expires_at
    if payload.selected_account_ids is not None:
        conn.selected_account_ids = payload.selected_account_ids
    if payload.is_active is not None:
        conn.is_active = payload.is_active
        if not payload.is_active:
            conn.status = ConnectionStatus.INACTIVE.value
    await db.flush()
    return _conn_to_response(conn)


@router.delete("/{connection_id}")
async def delete_connection(connection_id: UUID, db: AsyncSession = Depends(get_db)):
    conn = await _get_connection(db, connection_id)
    await db.delete(conn)
    logger.info(f"Deleted connection {connection_id}")
    return {"message": "Connection deleted"}


@router.post("/{connection_id}/sync")
async def sync_connection(connection_id: UUID, sync_service: SyncService = Depends(get_sync_service)):
    """Run an entity sync inline. Uses the service's own sessions, one transaction per entity."""
    try:
        summary = await sync_service.sync_connection(connection_id, sync_type="full")
    except ValueError:
        raise HTTPException(404, "Connection not found")
    except SyncError as e:
        status = 401 if e.category == "auth_expired" else 429 if e.category == "rate_limited" else 502
        raise HTTPException(status, f"Sync failed ({e.category}): {e.message}")
    return summary.to_dict()
