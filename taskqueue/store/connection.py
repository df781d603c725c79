"""
Database connection management.
Builds the async SQLAlchemy engine and session factory used by SqlAlchemyJobStore.
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from taskqueue.config import Settings, get_settings
from taskqueue.store.models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str | None = None, settings: Settings | None = None) -> AsyncEngine:
    """
    Create the async database engine.

    In-memory SQLite gets a static pool so the one database is shared by every
    session. File-backed SQLite opens a connection per session with NullPool.
    Other backends use a sized connection pool.

    Args:
        database_url: Overrides the configured database URL.
        settings: Settings to read pool options from.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()
    url = database_url or settings.database_url

    if url.startswith("sqlite") and ":memory:" in url:
        return create_async_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    if url.startswith("sqlite"):
        return create_async_engine(url, poolclass=NullPool)

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """
    Create the jobs table if it does not exist.
    Production deployments run the Alembic migrations instead.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")
