"""
Durable Task Queue

A database-backed work queue with atomic claims, bounded retries, stale-lock
recovery, and a host-local process lock for consumers.
"""

__version__ = "1.0.0"

from taskqueue.constants import ClaimStrategy, TaskStatus  # noqa: E402
from taskqueue.exceptions import (  # noqa: E402
    EncodingError,
    HandlerFailure,
    LockHeldError,
    RetryableError,
    StoreError,
    TaskQueueError,
    UnknownTaskError,
)
from taskqueue.lock import ProcessLock  # noqa: E402
from taskqueue.retry import ImmediateRetryPolicy, RetryPolicy, TieredBackoffPolicy  # noqa: E402
from taskqueue.store import TaskStore  # noqa: E402

__all__ = [
    "__version__",
    "TaskStore",
    "ProcessLock",
    "TaskStatus",
    "ClaimStrategy",
    "RetryPolicy",
    "ImmediateRetryPolicy",
    "TieredBackoffPolicy",
    "TaskQueueError",
    "EncodingError",
    "StoreError",
    "HandlerFailure",
    "RetryableError",
    "UnknownTaskError",
    "LockHeldError",
]
