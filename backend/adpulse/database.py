"""
Relational store wiring: one async engine per process, shared by the API,
the scheduler and the worker pools.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from adpulse.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def make_engine(database_url: str) -> AsyncEngine:
    """Build the async engine; pool sizing only applies to server databases."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return create_async_engine(database_url, echo=False)
    # Every worker pool slot may hold a session while the API serves requests.
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"timeout": settings.upstream_timeout_seconds},
    )


engine = make_engine(settings.database_url)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def session_scope(factory: async_sessionmaker = async_session) -> AsyncIterator[AsyncSession]:
    """One unit of work: commit on success, roll back and re-raise on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency around session_scope."""
    async with session_scope() as session:
        yield session


async def init_db():
    """Create missing tables. Deployed schemas come from alembic revision 001."""
    import adpulse.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Store ready: {len(Base.metadata.tables)} tables ({', '.join(sorted(Base.metadata.tables))})")


async def check_db_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Store unreachable: {e}")
        return False
