"""Runtime bootstrap for the sync engine.

Configures logging and the database on entry, hands out a service bound to
the acting user, and disposes of the engine on exit.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog

from src.crmsync.config import Environment, Settings, get_settings
from src.crmsync.core.database import close_db, get_session, init_db
from src.crmsync.core.logging import configure_structlog
from src.crmsync.sync.service import BidirectionalSyncService
from src.crmsync.sync.store import PostgresSyncStore


@asynccontextmanager
async def lifespan(
    user_id: str, settings: Settings | None = None
) -> AsyncGenerator[BidirectionalSyncService, None]:
    """Run the sync engine against PostgreSQL for one user.

    Tables are created on entry in development only; other environments are
    expected to have run ``alembic upgrade head``.
    """
    settings = settings or get_settings()
    configure_structlog()
    log = structlog.get_logger(__name__)

    if settings.ENVIRONMENT == Environment.development:
        await init_db()

    store = PostgresSyncStore(session_factory=get_session)
    log.info("sync.runtime_started", environment=settings.ENVIRONMENT.value)
    try:
        yield BidirectionalSyncService(store, user_id, settings=settings)
    finally:
        await close_db()
        log.info("sync.runtime_stopped")
