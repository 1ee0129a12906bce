"""Connections for the audit pipeline.

PostgreSQL (asyncpg) is the system of record behind DatabaseSink and the
ingestion route. Redis holds the local ring, the retry queue and alerts.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings

# ── System of record ─────────────────────────────────────────────────

# Sink writes are single-row upserts; a small pool covers the delivery worker
engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    pool_size=settings.db.pool_size,
    max_overflow=settings.db.pool_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for the ingestion and records routes."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Local buffer ─────────────────────────────────────────────────────

redis_client: aioredis.Redis = aioredis.from_url(settings.db.redis_url, decode_responses=True)


# ── Lifespan ─────────────────────────────────────────────────────────


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Create the audit tables outside production; Alembic owns them in production."""
    if not settings.is_production:
        from src.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    try:
        yield
    finally:
        await engine.dispose()
        await redis_client.aclose()
