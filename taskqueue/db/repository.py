"""
Task repository for database operations.
Implements the core data access patterns for task management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import (
    ColumnElement,
    Row,
    and_,
    case,
    cast,
    delete,
    func,
    insert,
    literal,
    or_,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession

from taskqueue.constants import (
    DEFAULT_TABLE_NAME,
    ERROR_MAX_LENGTH,
    ClaimStrategy,
    TaskStatus,
)
from taskqueue.db.models import task_table
from taskqueue.types.task import ClaimedTask, TaskRecord

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class TaskRepository:
    """
    Repository for task table operations over one session.

    Every status or lock mutation is a single conditional statement, so a
    concurrent consumer can never observe a half-applied transition. The
    caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, table_name: str = DEFAULT_TABLE_NAME):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            table_name: Name of the task table.
        """
        self._session = session
        self._table = task_table(table_name)

    @property
    def table_name(self) -> str:
        return self._table.name

    def _claimable(self, now: datetime, lock_timeout: timedelta | None) -> ColumnElement[bool]:
        """Predicate matching rows a consumer may claim at ``now``."""
        t = self._table
        unclaimed = and_(t.c.status == TaskStatus.PENDING, t.c.locked_at.is_(None))
        if lock_timeout is not None:
            stale = and_(
                t.c.status == TaskStatus.IN_PROGRESS,
                t.c.locked_at < now - lock_timeout,
            )
            ownership = or_(unclaimed, stale)
        else:
            ownership = unclaimed
        return and_(
            t.c.scheduled_at <= now,
            or_(t.c.expires_at.is_(None), t.c.expires_at > now),
            ownership,
        )

    def _active(self, task_id: int, claimed_at: datetime | None = None) -> ColumnElement[bool]:
        """
        Predicate matching an active task.

        With ``claimed_at`` it only matches while the claim made at that time
        still owns the row; a reclaimed or released task no longer matches.
        """
        t = self._table
        if claimed_at is None:
            return and_(t.c.id == task_id, t.c.status.in_(ACTIVE_STATUSES))
        return and_(
            t.c.id == task_id,
            t.c.status == TaskStatus.IN_PROGRESS,
            t.c.locked_at == claimed_at,
        )

    async def create_task(
        self,
        name: str,
        payload: str,
        payload_type: str,
        scheduled_at: datetime,
        expires_at: datetime | None,
        now: datetime,
    ) -> int:
        """
        Insert a new pending task.

        Args:
            name: Handler dispatch key.
            payload: Encoded payload text.
            payload_type: Denormalized type tag.
            scheduled_at: Earliest execution time.
            expires_at: Optional deadline.
            now: Creation timestamp.

        Returns:
            The new task id.
        """
        stmt = insert(self._table).values(
            name=name,
            payload=payload,
            payload_type=payload_type,
            scheduled_at=scheduled_at,
            expires_at=expires_at,
            status=TaskStatus.PENDING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        result = await self._session.execute(stmt)
        task_id = result.inserted_primary_key[0]
        return int(task_id)

    async def select_claim_candidates(
        self,
        now: datetime,
        limit: int,
        only_type: str | None = None,
        lock_timeout: timedelta | None = None,
        strategy: ClaimStrategy = ClaimStrategy.SKIP_LOCKED,
    ) -> Sequence[Row]:
        """
        Select due, unexpired, unowned rows under a row lock.

        With SKIP_LOCKED, rows locked by another open claim are skipped
        instead of waited on.
        """
        t = self._table
        stmt = select(
            t.c.id,
            t.c.name,
            t.c.payload,
            t.c.payload_type,
            t.c.retry_count,
            t.c.scheduled_at,
            t.c.status,
        ).where(self._claimable(now, lock_timeout))

        if only_type is not None:
            stmt = stmt.where(t.c.payload_type == only_type)

        stmt = (
            stmt.order_by(t.c.scheduled_at.asc(), t.c.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=strategy == ClaimStrategy.SKIP_LOCKED)
        )
        result = await self._session.execute(stmt)
        return result.fetchall()

    async def claim_task(
        self,
        candidate: Row,
        now: datetime,
        lock_timeout: timedelta | None = None,
    ) -> ClaimedTask | None:
        """
        Take ownership of one candidate row.

        The update re-checks the claim predicate, so it only succeeds if no
        other consumer has claimed the row since it was selected.

        Returns:
            The claimed task, or None if the row was taken in the meantime.
        """
        t = self._table
        stmt = (
            update(t)
            .where(and_(t.c.id == candidate.id, self._claimable(now, lock_timeout)))
            .values(status=TaskStatus.IN_PROGRESS, locked_at=now, updated_at=now)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None

        return ClaimedTask(
            id=candidate.id,
            name=candidate.name,
            payload=candidate.payload,
            payload_type=candidate.payload_type,
            retry_count=candidate.retry_count,
            scheduled_at=candidate.scheduled_at,
            locked_at=now,
            reclaimed=candidate.status == TaskStatus.IN_PROGRESS,
        )

    async def complete_task(
        self,
        task_id: int,
        now: datetime,
        delete_row: bool = False,
        claimed_at: datetime | None = None,
    ) -> int:
        """
        Mark a task completed, or delete it.

        Args:
            task_id: ID of the task.
            now: Update timestamp.
            delete_row: Delete the row instead of marking it completed.
            claimed_at: Only apply while the claim made at this time owns the task.

        Returns:
            Number of rows affected (0 when already deleted or the claim was lost).
        """
        t = self._table
        condition = t.c.id == task_id if claimed_at is None else self._active(task_id, claimed_at)
        if delete_row:
            stmt = delete(t).where(condition)
        else:
            stmt = (
                update(t)
                .where(condition)
                .values(status=TaskStatus.COMPLETED, locked_at=None, updated_at=now)
            )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def fail_task(
        self,
        task_id: int,
        error: str,
        max_retries: int,
        now: datetime,
        claimed_at: datetime | None = None,
    ) -> int:
        """
        Record a failure and requeue or fail the task in one statement.

        The task goes back to pending while retry_count is below max_retries
        and is marked failed otherwise; retry_count is always incremented.
        With ``claimed_at`` the update only applies while that claim owns the task.
        """
        t = self._table
        next_status = cast(
            case(
                (t.c.retry_count >= max_retries, literal(TaskStatus.FAILED.value)),
                else_=literal(TaskStatus.PENDING.value),
            ),
            t.c.status.type,
        )
        stmt = (
            update(t)
            .where(self._active(task_id, claimed_at))
            .values(
                status=next_status,
                retry_count=t.c.retry_count + 1,
                error=error[:ERROR_MAX_LENGTH],
                locked_at=None,
                updated_at=now,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def fail_task_terminally(
        self,
        task_id: int,
        error: str,
        now: datetime,
        claimed_at: datetime | None = None,
    ) -> int:
        """Mark a task failed regardless of its retry budget."""
        t = self._table
        stmt = (
            update(t)
            .where(self._active(task_id, claimed_at))
            .values(
                status=TaskStatus.FAILED,
                retry_count=t.c.retry_count + 1,
                error=error[:ERROR_MAX_LENGTH],
                locked_at=None,
                updated_at=now,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def lock_retry_count(self, task_id: int, claimed_at: datetime | None = None) -> int | None:
        """
        Read an active task's retry_count under a row lock.

        Returns:
            The retry count, or None if the task is missing or terminal.
        """
        t = self._table
        stmt = (
            select(t.c.retry_count)
            .where(self._active(task_id, claimed_at))
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def reschedule_failed_task(
        self,
        task_id: int,
        error: str,
        seen_retry_count: int,
        terminal: bool,
        scheduled_at: datetime | None,
        now: datetime,
        claimed_at: datetime | None = None,
    ) -> int:
        """
        Apply a failure computed from a locked read of retry_count.

        The retry_count guard makes the write a no-op if the row changed
        since it was read.
        """
        t = self._table
        values = {
            "status": TaskStatus.FAILED if terminal else TaskStatus.PENDING,
            "retry_count": seen_retry_count + 1,
            "error": error[:ERROR_MAX_LENGTH],
            "locked_at": None,
            "updated_at": now,
        }
        if not terminal and scheduled_at is not None:
            values["scheduled_at"] = scheduled_at

        stmt = (
            update(t)
            .where(
                and_(
                    self._active(task_id, claimed_at),
                    t.c.retry_count == seen_retry_count,
                )
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def release_tasks(self, task_ids: Sequence[int], now: datetime) -> int:
        """
        Return claimed tasks to pending without consuming a retry.

        Returns:
            Number of released tasks.
        """
        if not task_ids:
            return 0
        t = self._table
        stmt = (
            update(t)
            .where(and_(t.c.id.in_(list(task_ids)), t.c.status == TaskStatus.IN_PROGRESS))
            .values(status=TaskStatus.PENDING, locked_at=None, updated_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def recover_stale_locks(self, now: datetime, lock_timeout: timedelta) -> int:
        """
        Recover tasks whose claim is older than the lock timeout.

        This is called by the reaper to handle consumer crashes.

        Returns:
            Number of recovered tasks.
        """
        t = self._table
        stmt = (
            update(t)
            .where(
                and_(
                    t.c.status == TaskStatus.IN_PROGRESS,
                    t.c.locked_at < now - lock_timeout,
                )
            )
            .values(status=TaskStatus.PENDING, locked_at=None, updated_at=now)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(
                f"Recovered {count} tasks with stale locks",
                extra={"table": self.table_name},
            )

        return count

    async def requeue_failed(self, task_id: int, now: datetime, reset_retries: bool = True) -> int:
        """
        Move a failed task back to pending, due now.

        Returns:
            Number of rows affected (0 when the task is not failed).
        """
        t = self._table
        values = {
            "status": TaskStatus.PENDING,
            "scheduled_at": now,
            "locked_at": None,
            "error": None,
            "updated_at": now,
        }
        if reset_retries:
            values["retry_count"] = 0

        stmt = (
            update(t)
            .where(and_(t.c.id == task_id, t.c.status == TaskStatus.FAILED))
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def get_task(self, task_id: int) -> TaskRecord | None:
        """
        Get a task by ID.

        Returns:
            The task or None if not found.
        """
        stmt = select(self._table).where(self._table.c.id == task_id)
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        return TaskRecord.model_validate(dict(row._mapping)) if row else None

    async def get_status(self, task_id: int) -> TaskStatus | None:
        stmt = select(self._table.c.status).where(self._table.c.id == task_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_tasks(
        self,
        status: TaskStatus | None = None,
        only_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TaskRecord]:
        """
        List tasks in scheduling order with optional filtering.
        """
        t = self._table
        stmt = select(t)
        if status is not None:
            stmt = stmt.where(t.c.status == status)
        if only_type is not None:
            stmt = stmt.where(t.c.payload_type == only_type)
        stmt = stmt.order_by(t.c.scheduled_at.asc(), t.c.id.asc()).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        return [TaskRecord.model_validate(dict(row._mapping)) for row in result]

    async def get_task_stats(self, only_type: str | None = None) -> dict[str, int]:
        """
        Get task counts by status.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        t = self._table
        stmt = select(t.c.status, func.count()).group_by(t.c.status)
        if only_type is not None:
            stmt = stmt.where(t.c.payload_type == only_type)

        result = await self._session.execute(stmt)
        stats = {status.value: 0 for status in TaskStatus}
        for status, count in result.all():
            stats[TaskStatus(status).value] = count
        return stats

    async def purge(
        self,
        status: TaskStatus,
        older_than: datetime | None = None,
    ) -> int:
        """
        Delete tasks in a terminal status.

        Returns:
            Number of deleted rows.
        """
        if status in ACTIVE_STATUSES:
            raise ValueError(f"Refusing to purge active tasks with status {status}")
        t = self._table
        stmt = delete(t).where(t.c.status == status)
        if older_than is not None:
            stmt = stmt.where(t.c.updated_at < older_than)
        result = await self._session.execute(stmt)
        return result.rowcount
