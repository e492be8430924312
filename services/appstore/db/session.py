"""
Database session management for the appstore controllers.

One engine per process. Reconcilers receive the session factory returned
by init_db() and open one session per reconcile pass; get_db_session() is
for one-off work outside a controller (startup checks, scripts).
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from appstore.logging_config import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str, pool_size: int) -> dict[str, Any]:
    # sqlite (tests, local runs) uses a single-connection pool without sizing
    if database_url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": pool_size,
        "max_overflow": pool_size,
    }


async def init_db(
    database_url: str, echo: bool = False, pool_size: int = 10
) -> async_sessionmaker[AsyncSession]:
    """Create the engine, verify connectivity and return the session factory.

    pool_size should cover every controller worker, since each holds one
    connection for the length of a reconcile pass.
    """
    global _engine, _async_session_factory  # noqa: PLW0603
    logger.info("Initializing database connection", pool_size=pool_size)

    _engine = create_async_engine(database_url, echo=echo, **_engine_options(database_url, pool_size))
    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established", dialect=_engine.dialect.name)
    return _async_session_factory


async def close_db() -> None:
    global _engine, _async_session_factory  # noqa: PLW0603
    if _engine is not None:
        logger.info("Closing database connection pool")
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession]:
    """Session that commits on success and rolls back on any exception."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized, call init_db() first")

    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
