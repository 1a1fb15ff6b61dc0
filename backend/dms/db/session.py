"""
Database session management.

Each process builds its own engine: the API holds one for its lifetime, the
OCR worker and the summariser each hold one for the life of their loop, and
the reconciliation task builds and disposes one per run (Celery forks, and
asyncpg connections must not cross event loops).

Sessions are short: one unit of work per `session_scope()` block, committed
on normal exit and rolled back on error.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dms.core.config import Settings, settings

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# ---------------------------------------------------------------------------
# Engine / factory builders
# ---------------------------------------------------------------------------

def build_engine(cfg: Settings = settings) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict = {"echo": cfg.db_echo_sql}
    if not cfg.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=cfg.db_pool_size,
            max_overflow=cfg.db_max_overflow,
            pool_pre_ping=True,          # detect stale connections before use
            pool_recycle=3600,
        )
    return create_async_engine(cfg.database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> SessionFactory:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Process-wide engine for the API process."""
    return build_engine(settings)


@lru_cache(maxsize=1)
def get_session_factory() -> SessionFactory:
    return build_session_factory(get_engine())


# ---------------------------------------------------------------------------
# Unit-of-work helpers
# ---------------------------------------------------------------------------

@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Open a session with a transaction that commits on exit."""
    async with factory() as session:
        async with session.begin():
            yield session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a plain session.

    Services manage their own commits (the upload flow commits twice: once
    for metadata, once for the enqueue stamp), so no begin() block here.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /health endpoint."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
