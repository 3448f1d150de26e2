"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from taskqueue.config import get_settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def create_engine_for_url(database_url: str, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine, applying pool settings only where the dialect
    pools connections.

    Args:
        database_url: SQLAlchemy database URL.
        **kwargs: Extra engine arguments.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = get_settings()
    url = make_url(database_url)
    options: dict[str, Any] = {
        "echo": settings.log_level == "DEBUG",
        "pool_pre_ping": True,
    }
    if url.get_backend_name() != "sqlite":
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    options.update(kwargs)
    return create_async_engine(url, **options)


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(get_settings().database_url)
    return _engine


def get_test_engine(database_url: str) -> AsyncEngine:
    """
    Create a test database engine with NullPool.

    Args:
        database_url: The database URL for testing.

    Returns:
        AsyncEngine: The test SQLAlchemy async engine instance.
    """
    return create_async_engine(
        database_url,
        poolclass=NullPool,
        echo=False,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options the store relies on."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.

    Returns:
        The global session factory.
    """
    global AsyncSessionLocal
    AsyncSessionLocal = create_session_factory(get_engine())
    logger.info("Database connection initialized")
    return AsyncSessionLocal


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")
