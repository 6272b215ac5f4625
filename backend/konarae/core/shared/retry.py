"""
Retry policy for persistence calls.

A ``RetryPolicy`` is applied uniformly by every persistence call site through
``with_retry``. Only errors the policy classifies as transient are retried;
everything else, and the last failed attempt, is re-raised unmodified.

Usage:
    from konarae.core.shared.retry import with_retry, default_retry_policy

    project = await with_retry(lambda: save(session, data))
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from konarae.config import settings
from konarae.core.shared.errors import PersistenceError

logger = logging.getLogger("konarae.retry")

T = TypeVar("T")

# Connection-pool exhaustion and timeout signatures seen from asyncpg,
# SQLAlchemy pools and managed Postgres poolers.
TRANSIENT_ERROR_SIGNATURES = (
    "queuepool limit",
    "too many connections",
    "remaining connection slots",
    "connection pool",
    "could not obtain",
    "timed out",
    "timeout",
    "connection reset",
    "econnreset",
    "connection was closed",
    "connection refused",
    "p2024",
)


def is_transient_error(error: BaseException) -> bool:
    """Classify an exception as transient (worth retrying) or not."""
    if isinstance(error, PersistenceError):
        return error.kind == "transient"
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(signature in message for signature in TRANSIENT_ERROR_SIGNATURES)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    Attributes:
        max_retries: Retries after the first attempt (attempts = max_retries + 1)
        base_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier applied per retry (delay × factor^k)
        is_retryable: Classifier deciding which errors are retried
    """

    max_retries: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient_error)

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based)."""
        return self.base_delay * (self.backoff_factor ** retry_index)


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry_max_retries,
        base_delay=settings.retry_base_delay_seconds,
        backoff_factor=settings.retry_backoff_factor,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` under ``policy``.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy (defaults from settings)
        description: Label used in log lines
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The operation's result

    Raises:
        The original exception on a non-retryable error or when retries run out
    """
    policy = policy or default_retry_policy()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_retries or not policy.is_retryable(e):
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            logger.warning(
                f"Transient error during {description} "
                f"(attempt {attempt}/{policy.max_retries}), retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)
