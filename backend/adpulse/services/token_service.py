"""
Token Service: keeps provider access tokens usable before a sync starts.

Google: refreshes through the OAuth token endpoint when the access token is
within REFRESH_BUFFER of expiry. Meta: long-lived tokens cannot be refreshed
server-side, so an expired token means the user must reconnect.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from adpulse.config import get_settings
from adpulse.crypto import decrypt_token, encrypt_token
from adpulse.errors import AuthExpiredError
from adpulse.google_ads_client import create_google_ads_client
from adpulse.meta_client import create_meta_client
from adpulse.models import ConnectionStatus, ProviderConnection
from adpulse.services.rate_limiter import RateLimiter
from adpulse.upstream import UpstreamClient

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def token_is_expiring(conn: ProviderConnection, now: Optional[datetime] = None) -> bool:
    if not conn.expires_at:
        return False
    return (now or _utcnow()) >= conn.expires_at - REFRESH_BUFFER


async def mark_connection_expired(db: AsyncSession, conn: ProviderConnection, message: str):
    """Irrecoverable auth failure: the connection stays inactive until reconnected."""
    conn.status = ConnectionStatus.EXPIRED.value
    conn.is_active = False
    conn.last_error = message
    conn.updated_at = _utcnow()
    await db.flush()
    logger.warning(f"Connection {conn.id} ({conn.provider}) marked expired: {message}")


async def refresh_google_token(
    refresh_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """Exchange a refresh token for a new access token. Returns the token response JSON."""
    settings = get_settings()
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": settings.google_client_id,
        "client_secret": settings.google_client_secret,
    }
    if http_client is not None:
        response = await http_client.post(GOOGLE_TOKEN_URL, data=data)
    else:
        async with httpx.AsyncClient(timeout=30) as client:
            response = await client.post(GOOGLE_TOKEN_URL, data=data)
    response.raise_for_status()
    return response.json()


async def ensure_fresh_token(
    conn: ProviderConnection,
    db: AsyncSession,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderConnection:
    """
    Refresh or reject the connection's token as needed.
    Raises AuthExpiredError (after marking the connection) when the user must reconnect.
    """
    if not token_is_expiring(conn):
        return conn

    if conn.provider == "meta" or not conn.refresh_token:
        if conn.expires_at and _utcnow() >= conn.expires_at:
            message = "Access token expired; reconnect required"
            await mark_connection_expired(db, conn, message)
            raise AuthExpiredError(message, provider=conn.provider)
        return conn

    logger.info(f"Token expiring for connection {conn.id}, refreshing...")
    try:
        token_data = await refresh_google_token(decrypt_token(conn.refresh_token), http_client)
    except httpx.HTTPStatusError as e:
        if e.response.status_code in (400, 401):
            message = f"Token refresh rejected ({e.response.status_code}); reconnect required"
            await mark_connection_expired(db, conn, message)
            raise AuthExpiredError(message, provider=conn.provider) from e
        raise

    conn.access_token = encrypt_token(token_data["access_token"])
    expires_in = token_data.get("expires_in", 3600)
    conn.expires_at = _utcnow() + timedelta(seconds=expires_in)
    conn.status = ConnectionStatus.ACTIVE.value
    if "refresh_token" in token_data:
        conn.refresh_token = encrypt_token(token_data["refresh_token"])
    await db.flush()
    logger.info(f"Token refreshed for connection {conn.id}, expires in {expires_in}s")
    return conn


def create_client(
    conn: ProviderConnection,
    http_client: Optional[httpx.AsyncClient] = None,
    limiter: Optional[RateLimiter] = None,
) -> UpstreamClient:
    token = decrypt_token(conn.access_token)
    if conn.provider == "meta":
        return create_meta_client(token, http_client=http_client, limiter=limiter)
    if conn.provider == "google":
        return create_google_ads_client(token, http_client=http_client, limiter=limiter)
    raise ValueError(f"Unsupported provider: {conn.provider}")


async def get_client_with_fresh_token(
    conn: ProviderConnection,
    db: AsyncSession,
    http_client: Optional[httpx.AsyncClient] = None,
    limiter: Optional[RateLimiter] = None,
) -> UpstreamClient:
    """
    Upstream client with a guaranteed fresh access token.
    Main entry point; use this instead of the client factories directly.
    """
    conn = await ensure_fresh_token(conn, db, http_client)
    return create_client(conn, http_client=http_client, limiter=limiter)
