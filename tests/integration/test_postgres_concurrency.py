"""
Concurrent claim tests against PostgreSQL.

SQLite serializes writers, so real row-lock contention is only exercised
here. Set TEST_DATABASE_URL (postgresql+asyncpg://...) to run them.
"""

import asyncio
import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from taskqueue.constants import ClaimStrategy, TaskStatus
from taskqueue.db import create_session_factory
from taskqueue.db.connection import get_test_engine
from taskqueue.db.models import task_table
from taskqueue.store import TaskStore


POSTGRES_TEST_URL = os.getenv("TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(POSTGRES_TEST_URL is None, reason="TEST_DATABASE_URL not set"),
]


@pytest_asyncio.fixture
async def pg_store_factory(test_settings) -> AsyncGenerator:
    """Stores over a throwaway table on the test PostgreSQL server."""
    engine = get_test_engine(POSTGRES_TEST_URL)
    session_factory = create_session_factory(engine)
    table_name = f"tasks_{uuid.uuid4().hex[:8]}"

    def factory(**kwargs) -> TaskStore:
        kwargs.setdefault("settings", test_settings)
        return TaskStore(session_factory, table_name=table_name, **kwargs)

    await factory().install()

    yield factory

    table = task_table(table_name)
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: table.drop(sync_conn, checkfirst=True))
        await conn.run_sync(
            lambda sync_conn: table.c.status.type.drop(sync_conn, checkfirst=True)
        )
    await engine.dispose()


@pytest.mark.parametrize("strategy", [ClaimStrategy.SKIP_LOCKED, ClaimStrategy.PESSIMISTIC])
async def test_concurrent_claims_are_disjoint(pg_store_factory, strategy: ClaimStrategy):
    """Test that parallel consumers never receive the same task."""
    store: TaskStore = pg_store_factory(claim_strategy=strategy)
    ids = {await store.enqueue("send", {"n": n}) for n in range(40)}

    consumers = [pg_store_factory(claim_strategy=strategy) for _ in range(8)]
    batches = await asyncio.gather(*(c.claim_due_tasks(5) for c in consumers))

    claimed = [task.id for batch in batches for task in batch]
    assert len(claimed) == len(set(claimed))
    assert set(claimed) <= ids

    stats = await store.get_stats()
    assert stats["in_progress"] == len(claimed)


async def test_concurrent_failures_count_every_retry(pg_store_factory):
    """Test that the conditional failure update never loses an increment."""
    store: TaskStore = pg_store_factory(max_retries=100)
    task_id = await store.enqueue("send", {})

    await asyncio.gather(*(store.mark_failed(task_id, "boom") for _ in range(10)))

    task = await store.get_task(task_id)
    assert task.retry_count == 10
    assert task.status == TaskStatus.PENDING
