"""
Async SQLAlchemy engine and session factories.

Request handlers get a session through ``get_db``; the scheduler's
bulk recomputation and integrity jobs open their own through
``get_db_context``. The commission engine itself is handed the bare
``AsyncSessionLocal`` factory because an audited resolution commits
on its own session, independent of the caller's transaction.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from commission_engine.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create the async engine for ``database_url``.

    NullPool leaves connection reuse to the external pooler, which
    also means asyncpg's prepared statement cache has to stay off.
    """
    url = make_url(database_url)
    connect_args: Dict[str, Any] = {}
    if url.drivername == "postgresql+asyncpg":
        connect_args["statement_cache_size"] = 0

    logger.debug(f"Database engine for {url.drivername} at {url.host or url.database}")
    return create_async_engine(
        url,
        poolclass=NullPool,
        echo=False,
        connect_args=connect_args,
    )


engine = build_engine(settings.database_url)

# expire_on_commit stays off: resolutions and records are read after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: commit on success, roll back on any error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for scheduler jobs and startup hooks.

    Usage:
        async with get_db_context() as db:
            mismatched = await recorder.verify_recent(db, limit=100)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
