"""
Task store: the transactional face of the queue.

Producers call enqueue; consumers call claim_due_tasks / mark_completed /
mark_failed directly or let process_batch drive the whole cycle.
"""

import inspect
import logging
import time
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskqueue.config import Settings, get_settings
from taskqueue.constants import (
    SPAN_CLAIM_TASKS,
    SPAN_ENQUEUE_TASK,
    SPAN_EXECUTE_TASK,
    ClaimStrategy,
    TaskStatus,
)
from taskqueue.db.models import task_table
from taskqueue.db.repository import TaskRepository
from taskqueue.exceptions import StoreError
from taskqueue.observability.metrics import get_metrics
from taskqueue.observability.tracing import get_tracer
from taskqueue.retry import ImmediateRetryPolicy, RetryPolicy, policy_from_settings
from taskqueue.types.task import BatchResult, ClaimedTask, HandlerFunc, TaskHandler, TaskRecord
from taskqueue.utils import decode_payload, encode_payload, extract_payload_type, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return error


class TaskStore:
    """
    Durable task queue over a relational table.

    Guarantees:
    - a claim never returns a task that another open claim returned
    - claimed tasks are in_progress with locked_at set before the claim returns
    - claims older than the lock timeout become claimable again
    - a failing handler never aborts the rest of its batch
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        table_name: str | None = None,
        max_retries: int | None = None,
        delete_on_success: bool | None = None,
        lock_timeout: timedelta | None = _UNSET,
        claim_strategy: ClaimStrategy | None = None,
        retry_policy: RetryPolicy | None = None,
        transaction_per_task: bool | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the store. Unset options fall back to settings.

        Args:
            session_factory: Factory for sessions on the task database.
            table_name: Name of the task table.
            max_retries: Failures tolerated before a task is marked failed.
            delete_on_success: Delete completed rows instead of keeping them.
            lock_timeout: Age after which a claim is considered stale; None disables reclaim.
            claim_strategy: Row locking used when selecting candidates.
            retry_policy: Decides retryability and backoff of failures.
            transaction_per_task: Commit each task result separately in process_batch.
            settings: Settings to read defaults from.
        """
        settings = settings or get_settings()
        self._session_factory = session_factory
        self.table_name = table_name or settings.table_name
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.delete_on_success = (
            settings.delete_on_success if delete_on_success is None else delete_on_success
        )
        if lock_timeout is _UNSET:
            lock_timeout = (
                timedelta(seconds=settings.lock_timeout_seconds)
                if settings.lock_timeout_seconds
                else None
            )
        self.lock_timeout = lock_timeout
        self.claim_strategy = ClaimStrategy(claim_strategy or settings.claim_strategy)
        self.retry_policy = retry_policy or policy_from_settings(settings)
        self.transaction_per_task = (
            settings.transaction_per_task if transaction_per_task is None else transaction_per_task
        )
        self._metrics = get_metrics()

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[TaskRepository]:
        """
        Run one unit of work in its own transaction.

        Commits on success, rolls back on error, and converts database
        errors into StoreError.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield TaskRepository(session, self.table_name)
        except SQLAlchemyError as e:
            raise StoreError(f"Task store operation failed: {e}") from e

    async def install(self) -> None:
        """Create the task table and its indexes if they do not exist."""
        table = task_table(self.table_name)
        try:
            async with self._session_factory() as session:
                conn = await session.connection()
                await conn.run_sync(lambda sync_conn: table.create(sync_conn, checkfirst=True))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Could not create task table {self.table_name}: {e}") from e
        logger.info("Task table ready", extra={"table": self.table_name})

    async def enqueue(
        self,
        name: str,
        payload: Any,
        scheduled_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> int:
        """
        Add a task to the queue.

        Args:
            name: Handler dispatch key.
            payload: JSON-serializable data; a scalar ``type`` field sets the payload type.
            scheduled_at: Earliest execution time (default: now).
            expires_at: Deadline after which the task is never claimed.

        Returns:
            ID of the new task.

        Raises:
            EncodingError: If the payload cannot be serialized.
            StoreError: If the insert fails.
        """
        encoded = encode_payload(payload)
        payload_type = extract_payload_type(payload)
        now = utcnow()
        scheduled_at = to_naive_utc(scheduled_at) if scheduled_at is not None else now
        expires_at = to_naive_utc(expires_at) if expires_at is not None else None

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_TASK) as span:
            span.set_attribute("task.name", name)
            span.set_attribute("task.payload_type", payload_type)
            async with self._transaction() as repo:
                task_id = await repo.create_task(
                    name=name,
                    payload=encoded,
                    payload_type=payload_type,
                    scheduled_at=scheduled_at,
                    expires_at=expires_at,
                    now=now,
                )
            span.set_attribute("task.id", task_id)

        self._metrics.record_task_enqueued(payload_type)
        logger.info(
            "Enqueued task",
            extra={"task_id": task_id, "task_name": name, "payload_type": payload_type},
        )
        return task_id

    async def claim_due_tasks(self, limit: int = 10, only_type: str | None = None) -> list[ClaimedTask]:
        """
        Atomically claim up to ``limit`` due tasks in scheduled order.

        Args:
            limit: Maximum number of tasks to claim.
            only_type: Only claim tasks with this payload type.

        Returns:
            Claimed tasks; empty when nothing is due.

        Raises:
            StoreError: If the claim transaction fails.
        """
        if limit <= 0:
            return []
        async with self._transaction() as repo:
            return await self._claim(repo, limit, only_type)

    async def _claim(self, repo: TaskRepository, limit: int, only_type: str | None) -> list[ClaimedTask]:
        now = utcnow()
        with get_tracer().start_as_current_span(SPAN_CLAIM_TASKS) as span:
            candidates = await repo.select_claim_candidates(
                now=now,
                limit=limit,
                only_type=only_type,
                lock_timeout=self.lock_timeout,
                strategy=self.claim_strategy,
            )
            claimed: list[ClaimedTask] = []
            for candidate in candidates:
                task = await repo.claim_task(candidate, now, self.lock_timeout)
                if task is None:
                    logger.debug("Task claimed by another consumer", extra={"task_id": candidate.id})
                    continue
                if task.reclaimed:
                    logger.warning(
                        "Reclaimed task with stale lock",
                        extra={"task_id": task.id, "task_name": task.name},
                    )
                    self._metrics.record_stale_reclaimed(task.payload_type)
                claimed.append(task)
            span.set_attribute("task.claimed", len(claimed))

        if claimed:
            self._metrics.record_tasks_claimed(len(claimed), only_type)
            logger.info(
                f"Claimed {len(claimed)} tasks",
                extra={"task_count": len(claimed), "only_type": only_type},
            )
        return claimed

    async def mark_completed(self, task_id: int) -> None:
        """
        Mark a task completed, or delete it when configured to.
        Calling it again for the same task is a no-op.
        """
        async with self._transaction() as repo:
            await self._complete(repo, task_id)

    async def _complete(
        self,
        repo: TaskRepository,
        task_id: int,
        claimed_at: datetime | None = None,
    ) -> bool:
        affected = await repo.complete_task(
            task_id,
            utcnow(),
            delete_row=self.delete_on_success,
            claimed_at=claimed_at,
        )
        if affected:
            logger.info(
                "Task completed",
                extra={"task_id": task_id, "deleted": self.delete_on_success},
            )
        return bool(affected)

    async def mark_failed(self, task_id: int, error: BaseException | str = "") -> TaskStatus | None:
        """
        Record a failure and requeue the task or fail it for good.

        Args:
            task_id: ID of the task.
            error: Failure message or the exception raised by the handler.

        Returns:
            The task's resulting status, or None if no active task matched.
        """
        async with self._transaction() as repo:
            return await self._fail(repo, task_id, error)

    async def _fail(
        self,
        repo: TaskRepository,
        task_id: int,
        error: BaseException | str,
        claimed_at: datetime | None = None,
    ) -> TaskStatus | None:
        message = _error_message(error)
        now = utcnow()
        policy = self.retry_policy

        if not policy.is_retryable(error):
            affected = await repo.fail_task_terminally(task_id, message, now, claimed_at=claimed_at)
        elif isinstance(policy, ImmediateRetryPolicy):
            affected = await repo.fail_task(
                task_id, message, self.max_retries, now, claimed_at=claimed_at
            )
        else:
            seen = await repo.lock_retry_count(task_id, claimed_at=claimed_at)
            if seen is None:
                affected = 0
            else:
                terminal = seen >= self.max_retries
                delay = None if terminal else policy.delay(seen + 1)
                affected = await repo.reschedule_failed_task(
                    task_id,
                    message,
                    seen_retry_count=seen,
                    terminal=terminal,
                    scheduled_at=now + delay if delay is not None else None,
                    now=now,
                    claimed_at=claimed_at,
                )

        if not affected:
            if claimed_at is None:
                logger.warning("No active task to mark failed", extra={"task_id": task_id})
            return None

        status = await repo.get_status(task_id)
        if status == TaskStatus.FAILED:
            logger.warning(
                "Task failed permanently",
                extra={"task_id": task_id, "error": message},
            )
        else:
            logger.info(
                "Task queued for retry",
                extra={"task_id": task_id, "error": message},
            )
        return status

    async def process_batch(
        self,
        handler: TaskHandler | HandlerFunc,
        limit: int = 10,
        only_type: str | None = None,
    ) -> BatchResult:
        """
        Claim due tasks and run each through the handler.

        The handler receives ``(name, payload)``; raising marks the task
        failed, returning marks it completed.

        Args:
            handler: TaskHandler or plain (async) callable.
            limit: Maximum number of tasks to process.
            only_type: Only process tasks with this payload type.

        Returns:
            Ids of completed and failed tasks, and of tasks whose claim was
            taken over by another consumer before the result was recorded.

        Raises:
            StoreError: If the database fails; unfinished claims are released.
        """
        if limit <= 0:
            return BatchResult()
        handle = handler.handle if isinstance(handler, TaskHandler) else handler

        if not self.transaction_per_task:
            async with self._transaction() as repo:
                tasks = await self._claim(repo, limit, only_type)
                result = BatchResult()
                for task in tasks:
                    await self._run_task(repo, handle, task, result)
                return result

        tasks = await self.claim_due_tasks(limit, only_type)
        result = BatchResult()
        for index, task in enumerate(tasks):
            try:
                async with self._transaction() as repo:
                    await self._run_task(repo, handle, task, result)
            except StoreError:
                unfinished = [t.id for t in tasks[index:]]
                await self._release_after_error(unfinished)
                raise
        return result

    async def _run_task(
        self,
        repo: TaskRepository,
        handle: HandlerFunc,
        task: ClaimedTask,
        result: BatchResult,
    ) -> None:
        start_time = time.monotonic()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_TASK) as span:
            span.set_attribute("task.id", task.id)
            span.set_attribute("task.name", task.name)
            span.set_attribute("task.attempt", task.attempt)
            try:
                payload = decode_payload(task.payload)
                outcome = handle(task.name, payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(
                    "Task handler failed",
                    extra={"task_id": task.id, "task_name": task.name, "error": _error_message(e)},
                )
                span.record_exception(e)
                status = await self._fail(repo, task.id, e, claimed_at=task.locked_at)
                if status is None:
                    self._claim_lost(task, result)
                    return
                result.failed.append(task.id)
                self._metrics.record_task_failed(
                    task.payload_type,
                    status.value,
                    time.monotonic() - start_time,
                )
                return

        if not await self._complete(repo, task.id, claimed_at=task.locked_at):
            self._claim_lost(task, result)
            return
        result.completed.append(task.id)
        self._metrics.record_task_completed(task.payload_type, time.monotonic() - start_time)

    def _claim_lost(self, task: ClaimedTask, result: BatchResult) -> None:
        # The result is dropped; the current owner records its own
        logger.warning(
            "Claim lost before the result was recorded",
            extra={"task_id": task.id, "task_name": task.name, "locked_at": task.locked_at},
        )
        result.lost.append(task.id)

    async def _release_after_error(self, task_ids: Sequence[int]) -> None:
        try:
            released = await self.release_claims(task_ids)
        except StoreError:
            logger.exception(
                "Could not release claims; they will be reclaimed after the lock timeout",
                extra={"task_ids": list(task_ids)},
            )
            return
        logger.warning(
            f"Released {released} claimed tasks after store error",
            extra={"task_ids": list(task_ids)},
        )

    async def release_claims(self, task_ids: Sequence[int]) -> int:
        """Return in-progress tasks to pending without consuming a retry."""
        async with self._transaction() as repo:
            return await repo.release_tasks(task_ids, utcnow())

    async def reclaim_stale_locks(self) -> int:
        """
        Return tasks with claims older than the lock timeout to pending.

        Returns:
            Number of recovered tasks (0 when no lock timeout is configured).
        """
        if self.lock_timeout is None:
            return 0
        async with self._transaction() as repo:
            count = await repo.recover_stale_locks(utcnow(), self.lock_timeout)
        if count:
            self._metrics.record_stale_reclaimed("all", count)
        return count

    async def requeue(self, task_id: int, reset_retries: bool = True) -> bool:
        """
        Move a failed task back to the queue.

        Returns:
            True if the task was failed and is now pending.
        """
        async with self._transaction() as repo:
            affected = await repo.requeue_failed(task_id, utcnow(), reset_retries=reset_retries)
        if affected:
            logger.info("Task requeued", extra={"task_id": task_id})
        return bool(affected)

    async def get_task(self, task_id: int) -> TaskRecord | None:
        async with self._transaction() as repo:
            return await repo.get_task(task_id)

    async def list_tasks(
        self,
        status: TaskStatus | None = None,
        only_type: str | None = None,
        limit: int = 100,
    ) -> list[TaskRecord]:
        async with self._transaction() as repo:
            return await repo.list_tasks(status=status, only_type=only_type, limit=limit)

    async def get_stats(self, only_type: str | None = None) -> dict[str, int]:
        """Task counts by status; also updates the queue depth gauge."""
        async with self._transaction() as repo:
            stats = await repo.get_task_stats(only_type)
        self._metrics.update_queue_depth(only_type or "all", stats[TaskStatus.PENDING.value])
        return stats

    async def purge(
        self,
        status: TaskStatus = TaskStatus.COMPLETED,
        older_than: datetime | None = None,
    ) -> int:
        """Delete terminal tasks, optionally only those last updated before ``older_than``."""
        async with self._transaction() as repo:
            return await repo.purge(status, to_naive_utc(older_than) if older_than else None)
