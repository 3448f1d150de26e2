"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from taskqueue.config import Settings
from taskqueue.db import create_session_factory, metadata
from taskqueue.db.connection import get_test_engine
from taskqueue.lock import ProcessLock
from taskqueue.store import TaskStore


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """A fresh SQLite database file per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}"


@pytest.fixture
def test_settings(tmp_path: Path, database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        max_retries=3,
        lock_timeout_seconds=300,
        lock_dir=str(tmp_path / "locks"),
        log_level="DEBUG",
        log_format="console",
        worker_batch_size=5,
        worker_poll_interval_seconds=0.01,
        reaper_interval_seconds=1,
    )


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with the task table installed."""
    engine = get_test_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> TaskStore:
    """Task store with three retries and a five minute lock timeout."""
    return TaskStore(
        session_factory,
        max_retries=3,
        lock_timeout=timedelta(minutes=5),
        settings=test_settings,
    )


@pytest.fixture
def make_store(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
):
    """Build a store over the test database with custom options."""
    def factory(**kwargs) -> TaskStore:
        kwargs.setdefault("settings", test_settings)
        return TaskStore(session_factory, **kwargs)
    return factory


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "locks" / "test_worker.lock"


@pytest.fixture
def process_lock(lock_path: Path):
    """A process lock that is always released after the test."""
    lock = ProcessLock(path=lock_path)
    yield lock
    lock.release()


@pytest.fixture
def email_payload() -> dict:
    return {"type": "email", "to": "a@b.com"}
