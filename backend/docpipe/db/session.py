"""
Database session management.

Two ways in:
  - get_db()            FastAPI dependency; one transaction per request,
                        committed on clean exit, rolled back on error.
  - AsyncSessionLocal   the session factory services and workers receive as
                        `session_factory`; each opens its own short sessions.

Multi-record writes that must be observed together go through
docpipe.db.transaction instead of hand-rolled begin/commit pairs.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docpipe.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"echo": settings.db_echo_sql, "pool_pre_ping": True}
    # SQLite (tests, local dev) uses a singleton/static pool with no sizing knobs
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=3600,
        )
    return kwargs


engine: AsyncEngine = create_async_engine(
    settings.database_url,
    **_engine_kwargs(settings.database_url),
)

# Session factory: expire_on_commit=False keeps ORM objects usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session. The transaction commits automatically when the
    route returns and rolls back if it raises.
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema bootstrap / health
# ---------------------------------------------------------------------------

async def create_all() -> None:
    """Create every table on the configured engine (dev / test bootstrap)."""
    from docpipe.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health() -> dict:
    """Ping the database; used by /health endpoint."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
