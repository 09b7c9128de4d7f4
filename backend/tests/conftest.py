"""
Shared fixtures: an in-memory SQLite database (aiosqlite) with the full schema,
plus a workspace account and a Meta connection to hang synced data on.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adpulse.crypto import encrypt_token
from adpulse.database import Base
from adpulse.models import Account, ConnectionStatus, ProviderConnection


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def account(session_factory):
    async with session_factory() as db:
        acct = Account(name="Acme", currency="USD")
        db.add(acct)
        await db.commit()
        return acct


@pytest.fixture
async def meta_connection(session_factory, account):
    async with session_factory() as db:
        conn = ProviderConnection(
            account_id=account.id,
            provider="meta",
            name="Acme Meta",
            access_token=encrypt_token("meta-token-123456"),
            is_active=True,
            status=ConnectionStatus.ACTIVE.value,
            selected_account_ids=[],
        )
        db.add(conn)
        await db.commit()
        return conn
