"""
Exception hierarchy for the task queue.
"""


class TaskQueueError(Exception):
    """Base class for all task queue errors."""


class EncodingError(TaskQueueError):
    """A payload could not be serialized or deserialized."""


class StoreError(TaskQueueError):
    """The backing database failed during a store operation."""


class HandlerFailure(TaskQueueError):
    """Business-logic failure raised by a task handler."""


class RetryableError(HandlerFailure):
    """Transient handler failure (rate limit, timeout) worth retrying later."""


class UnknownTaskError(HandlerFailure):
    """No handler is registered for a task name."""

    def __init__(self, name: str):
        super().__init__(f"No handler registered for task: {name}")
        self.name = name


class LockHeldError(TaskQueueError):
    """The process lock is held by another live process."""
