"""Database session management."""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from clawhub.app.config import get_settings
from clawhub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str | None = None, create_tables: bool = False) -> AsyncEngine:
    """Create the process-wide engine and session factory.

    Args:
        url: Database URL. Defaults to DATABASE_URL from settings.
        create_tables: Create missing tables (tests, local development).
    """
    global _engine, _session_factory

    settings = get_settings()
    url = url or str(settings.database.url)

    engine_kwargs: dict = {"echo": settings.database.echo}
    if not url.startswith("sqlite"):
        engine_kwargs.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_recycle=3600,
            pool_pre_ping=True,
        )

    _engine = create_async_engine(url, **engine_kwargs)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_tables:
                await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database connected", extra={"event": LogEvent.DB_CONNECTED})
    except Exception as e:
        logger.error(
            "Database connection failed",
            extra={
                "event": LogEvent.DB_ERROR,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
        raise

    return _engine


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get session factory for creating new sessions.

    Background provisioning runs outside any request and opens its own
    sessions from this factory.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized")
    return _session_factory
