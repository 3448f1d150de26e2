"""
Task-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from pydantic import BaseModel

from taskqueue.constants import TaskStatus


class TaskRecord(BaseModel):
    """
    Full task row as stored in the task table.
    Used by inspection operations (get, list).
    """

    id: int
    name: str
    payload: str
    payload_type: str
    scheduled_at: datetime
    status: TaskStatus
    retry_count: int
    error: str | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


@dataclass
class ClaimedTask:
    """
    A task owned by the current consumer after a successful claim.
    The payload is still the raw stored text; decoding is up to the caller.
    """

    id: int
    name: str
    payload: str
    payload_type: str
    retry_count: int
    scheduled_at: datetime
    locked_at: datetime
    reclaimed: bool = False

    @property
    def attempt(self) -> int:
        """One-based attempt number for this execution."""
        return self.retry_count + 1


@runtime_checkable
class TaskHandler(Protocol):
    """
    Executes one task.

    Raising any exception signals failure; returning normally signals success.
    """

    def handle(self, name: str, payload: Any) -> Awaitable[None] | None: ...


# Plain callables are accepted wherever a TaskHandler is
HandlerFunc = Callable[[str, Any], Awaitable[None] | None]


@dataclass
class BatchResult:
    """Outcome of one process_batch call."""

    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    # Claimed, but reclaimed by another consumer before the result was recorded
    lost: list[int] = field(default_factory=list)

    @property
    def claimed(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.lost)

    def __bool__(self) -> bool:
        return self.claimed > 0
