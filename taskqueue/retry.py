"""
Retry policies applied when a task fails.

A policy answers two questions for the store:
- is this failure worth another attempt at all?
- how long should the task wait before it becomes claimable again?
"""

import asyncio
import re
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Protocol

from taskqueue.config import Settings, get_settings
from taskqueue.constants import RetryPolicyName
from taskqueue.exceptions import RetryableError

# Messages that signal a transient condition on the far side
TRANSIENT_ERROR_PATTERN = re.compile(
    r"rate[\s_-]?limit|too many requests|\b429\b|timed?[\s_-]?out|timeout",
    re.IGNORECASE,
)


class RetryPolicy(Protocol):
    """Pluggable retry decision used by TaskStore.mark_failed."""

    def is_retryable(self, error: BaseException | str) -> bool: ...

    def delay(self, retry_count: int) -> timedelta | None: ...


def is_transient_error(error: BaseException | str) -> bool:
    """Default predicate: rate-limit and timeout signals are transient."""
    if isinstance(error, (RetryableError, TimeoutError, asyncio.TimeoutError)):
        return True
    return bool(TRANSIENT_ERROR_PATTERN.search(str(error)))


class ImmediateRetryPolicy:
    """Every failure is retried; the task is pending again right away."""

    def is_retryable(self, error: BaseException | str) -> bool:
        return True

    def delay(self, retry_count: int) -> timedelta | None:
        return None

    def __repr__(self) -> str:
        return "ImmediateRetryPolicy()"


class TieredBackoffPolicy:
    """
    Reschedule transient failures with a delay that grows in tiers.

    Each tier is a ``(max_retry_count, delay)`` pair; the first tier whose
    bound is not exceeded by the new retry count wins. Failures the predicate
    rejects go straight to ``failed``.
    """

    DEFAULT_TIERS: tuple[tuple[int, timedelta], ...] = (
        (3, timedelta(seconds=30)),
        (6, timedelta(minutes=5)),
    )
    DEFAULT_DELAY = timedelta(minutes=30)

    def __init__(
        self,
        tiers: Sequence[tuple[int, timedelta]] | None = None,
        default_delay: timedelta | None = None,
        retryable: Callable[[BaseException | str], bool] | None = None,
    ):
        self.tiers = tuple(sorted(tiers if tiers is not None else self.DEFAULT_TIERS))
        self.default_delay = default_delay if default_delay is not None else self.DEFAULT_DELAY
        self._retryable = retryable or is_transient_error

    def is_retryable(self, error: BaseException | str) -> bool:
        return self._retryable(error)

    def delay(self, retry_count: int) -> timedelta | None:
        for bound, delay in self.tiers:
            if retry_count <= bound:
                return delay
        return self.default_delay

    def __repr__(self) -> str:
        return f"TieredBackoffPolicy(tiers={self.tiers!r}, default_delay={self.default_delay!r})"


def policy_from_settings(settings: Settings | None = None) -> RetryPolicy:
    """Build the retry policy named in settings."""
    settings = settings or get_settings()
    if settings.retry_policy == RetryPolicyName.BACKOFF:
        return TieredBackoffPolicy(
            tiers=[(bound, timedelta(seconds=secs)) for bound, secs in settings.backoff_tiers],
            default_delay=timedelta(seconds=settings.backoff_default_seconds),
        )
    return ImmediateRetryPolicy()
