"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """
    Task lifecycle states.

    State transitions:
    - PENDING -> IN_PROGRESS (claimed, locked_at set)
    - IN_PROGRESS -> COMPLETED (success, or the row is deleted)
    - IN_PROGRESS -> PENDING (retry, or stale lock reclaimed)
    - IN_PROGRESS -> FAILED (retries exhausted or non-retryable error)
    - FAILED -> PENDING (manual requeue)
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ClaimStrategy(StrEnum):
    """Row locking used when selecting claim candidates."""

    SKIP_LOCKED = "skip_locked"
    PESSIMISTIC = "pessimistic"


class RetryPolicyName(StrEnum):
    """Retry policies selectable from settings."""

    IMMEDIATE = "immediate"
    BACKOFF = "backoff"


# Default values
DEFAULT_TABLE_NAME = "tasks"
DEFAULT_PAYLOAD_TYPE = "default"
DEFAULT_MAX_RETRIES = 3
DEFAULT_BATCH_SIZE = 10
DEFAULT_LOCK_TIMEOUT_SECONDS = 300
DEFAULT_LOCK_NAME = "task_worker.lock"

PAYLOAD_TYPE_KEY = "type"
PAYLOAD_TYPE_MAX_LENGTH = 64
TASK_NAME_MAX_LENGTH = 255
ERROR_MAX_LENGTH = 65535

# Metrics names
METRIC_QUEUE_DEPTH = "taskqueue_depth"
METRIC_TASKS_ENQUEUED = "taskqueue_tasks_enqueued_total"
METRIC_TASKS_CLAIMED = "taskqueue_tasks_claimed_total"
METRIC_TASKS_COMPLETED = "taskqueue_tasks_completed_total"
METRIC_TASKS_FAILED = "taskqueue_tasks_failed_total"
METRIC_STALE_RECLAIMED = "taskqueue_stale_locks_reclaimed_total"
METRIC_TASK_DURATION = "taskqueue_task_duration_seconds"

# Trace span names
SPAN_ENQUEUE_TASK = "enqueue_task"
SPAN_CLAIM_TASKS = "claim_tasks"
SPAN_EXECUTE_TASK = "execute_task"
