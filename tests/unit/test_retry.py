"""
Unit tests for retry policies.
"""

import asyncio
from datetime import timedelta

import pytest

from taskqueue.config import Settings
from taskqueue.constants import RetryPolicyName
from taskqueue.exceptions import HandlerFailure, RetryableError
from taskqueue.retry import (
    ImmediateRetryPolicy,
    TieredBackoffPolicy,
    is_transient_error,
    policy_from_settings,
)


class TestTransientErrors:
    """Tests for the default retryable predicate."""

    @pytest.mark.parametrize(
        "error",
        [
            RetryableError("upstream busy"),
            TimeoutError(),
            asyncio.TimeoutError(),
            "Rate limit exceeded",
            "HTTP 429 from provider",
            "Too Many Requests",
            RuntimeError("connection timed out"),
            "request timeout",
        ],
    )
    def test_transient(self, error):
        assert is_transient_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            ValueError("invalid recipient"),
            HandlerFailure("template missing"),
            "HTTP 4290 is not a status",
            "",
        ],
    )
    def test_permanent(self, error):
        assert is_transient_error(error) is False


class TestImmediateRetryPolicy:
    def test_everything_is_retryable(self):
        policy = ImmediateRetryPolicy()

        assert policy.is_retryable(ValueError("boom")) is True
        assert policy.is_retryable("anything") is True
        assert policy.delay(1) is None
        assert policy.delay(100) is None


class TestTieredBackoffPolicy:
    """Tests for TieredBackoffPolicy."""

    @pytest.mark.parametrize(
        "retry_count,expected",
        [
            (1, timedelta(seconds=30)),
            (3, timedelta(seconds=30)),
            (4, timedelta(minutes=5)),
            (6, timedelta(minutes=5)),
            (7, timedelta(minutes=30)),
            (50, timedelta(minutes=30)),
        ],
    )
    def test_default_tiers(self, retry_count: int, expected: timedelta):
        assert TieredBackoffPolicy().delay(retry_count) == expected

    def test_custom_tiers_are_sorted(self):
        policy = TieredBackoffPolicy(
            tiers=[(5, timedelta(seconds=50)), (1, timedelta(seconds=10))],
            default_delay=timedelta(seconds=99),
        )

        assert policy.delay(1) == timedelta(seconds=10)
        assert policy.delay(2) == timedelta(seconds=50)
        assert policy.delay(6) == timedelta(seconds=99)

    def test_custom_predicate(self):
        policy = TieredBackoffPolicy(retryable=lambda error: isinstance(error, KeyError))

        assert policy.is_retryable(KeyError("x")) is True
        assert policy.is_retryable(RetryableError("rate limit")) is False


class TestPolicyFromSettings:
    def test_immediate_by_default(self):
        policy = policy_from_settings(Settings(_env_file=None))

        assert isinstance(policy, ImmediateRetryPolicy)

    def test_backoff_from_settings(self):
        settings = Settings(
            _env_file=None,
            retry_policy=RetryPolicyName.BACKOFF,
            backoff_tiers=[(2, 5)],
            backoff_default_seconds=60,
        )

        policy = policy_from_settings(settings)

        assert isinstance(policy, TieredBackoffPolicy)
        assert policy.delay(1) == timedelta(seconds=5)
        assert policy.delay(3) == timedelta(seconds=60)
