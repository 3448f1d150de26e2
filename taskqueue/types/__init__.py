"""
Type definitions for the task queue.
"""

from taskqueue.types.task import (
    BatchResult,
    ClaimedTask,
    HandlerFunc,
    TaskHandler,
    TaskRecord,
)

__all__ = [
    "BatchResult",
    "ClaimedTask",
    "HandlerFunc",
    "TaskHandler",
    "TaskRecord",
]
