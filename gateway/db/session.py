"""Engine and session factory behind every gateway store."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gateway.config import get_settings


@lru_cache
def get_engine() -> AsyncEngine:
    """Build and cache the asyncpg engine sized from database settings."""
    database = get_settings().database
    return create_async_engine(
        database.url,
        pool_pre_ping=True,
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_recycle=database.pool_recycle_seconds,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Build and cache the session factory; loaded rows stay readable after commit."""
    return async_sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    await get_engine().dispose()
