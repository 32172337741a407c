"""
Database connection management for the worker.

Notification records are written through one async SQLAlchemy engine per
process. ``init_db()`` runs at worker startup and ``close_db()`` during
graceful shutdown.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobpipe.config import get_settings
from jobpipe.observability.tracing import instrument_sqlalchemy

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or lazily create the async engine from ``DATABASE_URL``."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return _engine


async def init_db(instrument: bool = True) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory.

    Args:
        instrument: Attach OpenTelemetry instrumentation to the engine.

    Returns:
        The session factory, also kept for :func:`get_session_context`.
    """
    global _session_factory
    engine = get_engine()
    if instrument:
        instrument_sqlalchemy(engine)

    _session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("Database connection initialized")
    return _session_factory


async def close_db() -> None:
    """Dispose of the engine. Safe to call when never initialized."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connection closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Session scope: commits on exit, rolls back and re-raises on error.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def ping_db() -> bool:
    """``SELECT 1`` for the health endpoint."""
    if _session_factory is None:
        return False
    try:
        async with _session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Database health check failed", extra={"error": str(e)})
        return False
    return True
