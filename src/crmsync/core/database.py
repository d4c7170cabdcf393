"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for all sync engine tables
- get_engine(): Lazily created async engine
- get_session(): Session factory callable injected into PostgresSyncStore
- init_db() / close_db(): Table creation for local runs and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crmsync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

sync_metadata = MetaData()


class Base(DeclarativeBase):
    """Base class for sync engine models."""

    metadata = sync_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create all sync tables if they don't exist.

    Production deployments run the Alembic revision instead; this is for
    local development databases.
    """
    # Register models on the metadata before create_all
    from src.crmsync.sync import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
