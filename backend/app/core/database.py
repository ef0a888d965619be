"""
Database Configuration
======================

Async engine and session factory.

Request handlers get one session per request (``get_db``). Export streaming
instead opens one short-lived session per batch through
``async_session_factory``, so no pooled connection is held for the lifetime
of a long export.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool

from app.core.config import settings
from app.models.base import Base


def _engine_options() -> dict:
    options = dict(echo=settings.DEBUG, pool_pre_ping=True)
    if settings.APP_ENV == "test":
        # Pooled asyncpg connections outlive per-test event loops.
        options["poolclass"] = NullPool
    else:
        options["pool_size"] = settings.DB_POOL_SIZE
        options["max_overflow"] = settings.DB_MAX_OVERFLOW
    return options


engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **_engine_options())

# expire_on_commit=False: jobs and snapshots are read after commit to build responses.
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def create_db_and_tables() -> None:
    """Development convenience; Alembic owns the schema elsewhere."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory dependency (overridable in tests)."""
    return async_session_factory
