"""
Database session management.

The engine and session factory are built on first use from settings so that
importing this module never opens a connection. Request handlers use the
`get_db()` dependency; background work is handed the session factory and
opens its own short transactions.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from knowledge_ingest.core.config import get_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    settings = get_settings()
    kwargs: dict = {"echo": settings.db_echo_sql}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,   # detect stale connections before use
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **kwargs)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yields a session for one request. Service functions open their own
    transactions with `session.begin()`, so nothing is committed here.
    """
    async with get_session_factory()() as session:
        yield session


# ---------------------------------------------------------------------------
# Worker engine
# ---------------------------------------------------------------------------

def create_worker_engine() -> AsyncEngine:
    """
    Engine for a Celery task. Each task runs its own event loop, so pooled
    connections must not outlive it: NullPool opens one per checkout.
    """
    settings = get_settings()
    return create_async_engine(settings.database_url, poolclass=NullPool, echo=settings.db_echo_sql)


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health() -> dict:
    """Ping the database; used by /ready endpoint."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
