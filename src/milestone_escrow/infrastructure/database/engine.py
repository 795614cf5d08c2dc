"""Async engine and the per-request unit of work.

One engine per process, built lazily from Settings and disposed on shutdown.
Escrow writes depend on the agreement row lock (SELECT ... FOR UPDATE) and
on the status+version guarded UPDATE, so PostgreSQL sessions run at
READ COMMITTED and every request commits exactly once at the end.

    session = Depends(get_async_session)   # commit on success, rollback on error
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from milestone_escrow.config import get_settings
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from milestone_escrow.config import Settings

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(settings: Settings) -> dict[str, Any]:
    """Keyword arguments for create_async_engine for the configured database."""
    if settings.database_url.startswith("sqlite"):
        # Local runs only: no server-side pool or isolation level to tune.
        return {"echo": settings.db_echo_sql}
    return {
        "echo": settings.db_echo_sql,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_pre_ping": True,
        "isolation_level": "READ COMMITTED",
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        logger.info("database.engine_created", dialect=_engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session per request; commit once at the end or roll back."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.debug("database.rolled_back", error_type=type(exc).__name__)
            raise


async def check_connection() -> None:
    """Round-trip a trivial query; raises if the database is unreachable."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))


async def init_db() -> None:
    """Create missing tables in development; elsewhere the schema is managed by deploys."""
    from milestone_escrow.infrastructure.database.orm_models import Base

    if not get_settings().is_development:
        logger.info("database.create_all_skipped")
        return

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.tables_ready", tables=len(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database.engine_disposed")
