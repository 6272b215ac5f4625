"""
Tests for the persistence retry policy.
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from konarae.core.shared.errors import PersistenceError
from konarae.core.shared.retry import (
    RetryPolicy,
    default_retry_policy,
    is_transient_error,
    with_retry,
)


class Flaky:
    """Fails ``failures`` times with ``error`` before returning ``value``."""

    def __init__(self, failures, error, value="ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestTransientClassification:

    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("QueuePool limit of size 20 overflow 40 reached, connection timed out"),
            RuntimeError("FATAL: sorry, too many connections for role"),
            RuntimeError("Timed out fetching a new connection from the connection pool (P2024)"),
            RuntimeError("read ECONNRESET"),
            asyncio.TimeoutError(),
            ConnectionResetError("reset by peer"),
            PersistenceError("pool exhausted", kind="transient"),
            OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout")),
        ],
    )
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize(
        "error",
        [
            ValueError("invalid input syntax for type uuid"),
            RuntimeError('duplicate key value violates unique constraint "uq_support_projects"'),
            PersistenceError("check constraint", kind="permanent"),
            LookupError("Attachment not found"),
        ],
    )
    def test_permanent(self, error):
        assert not is_transient_error(error)


class TestRetryPolicy:

    def test_exponential_delays(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0)
        assert [policy.delay_for(k) for k in range(3)] == [1.0, 2.0, 4.0]

    def test_defaults_from_settings(self):
        policy = default_retry_policy()
        assert policy.max_retries == 3
        assert policy.backoff_factor == 2.0


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_success_without_retry(self, no_wait):
        operation = Flaky(0, None)
        assert await with_retry(operation, RetryPolicy(), sleep=no_wait) == "ok"
        assert operation.calls == 1
        assert no_wait.delays == []

    @pytest.mark.asyncio
    async def test_transient_error_retried_with_backoff(self, no_wait):
        operation = Flaky(2, RuntimeError("connection timed out"))
        policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0)

        assert await with_retry(operation, policy, sleep=no_wait) == "ok"
        assert operation.calls == 3
        assert no_wait.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_final_attempt_rethrows_unmodified(self, no_wait):
        error = RuntimeError("QueuePool limit reached")
        operation = Flaky(10, error)
        policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff_factor=2.0)

        with pytest.raises(RuntimeError) as exc_info:
            await with_retry(operation, policy, sleep=no_wait)

        assert exc_info.value is error
        assert operation.calls == 4
        assert no_wait.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self, no_wait):
        error = ValueError("bad data")
        operation = Flaky(1, error)

        with pytest.raises(ValueError) as exc_info:
            await with_retry(operation, RetryPolicy(), sleep=no_wait)

        assert exc_info.value is error
        assert operation.calls == 1
        assert no_wait.delays == []

    @pytest.mark.asyncio
    async def test_custom_classifier(self, no_wait):
        operation = Flaky(1, KeyError("retry me"))
        policy = RetryPolicy(max_retries=1, base_delay=0.5, is_retryable=lambda e: isinstance(e, KeyError))

        assert await with_retry(operation, policy, sleep=no_wait) == "ok"
        assert no_wait.delays == [0.5]
