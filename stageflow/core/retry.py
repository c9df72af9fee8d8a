"""
Stageflow - Retry
=================

Bounded exponential backoff with jitter for transient failures
(store lock contention, issue tracker network errors).
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between tries."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """
        Delay before retry number `attempt` (0-indexed).

        base * 2^attempt, clamped to max_delay, then jittered to 75%-125%.
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        jitter = 0.75 + rng() * 0.5
        return delay * jitter


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    should_retry: Callable[[BaseException], bool],
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "operation",
) -> T:
    """
    Run `fn` until it succeeds, a non-retryable error is raised,
    or `policy.max_attempts` is exhausted.

    Args:
        fn: Zero-argument coroutine factory
        should_retry: Predicate deciding if an exception is transient
        policy: Attempt count and delay bounds
        sleep: Awaitable sleep (injectable for tests)
        operation: Name used in log events

    Returns:
        Whatever `fn` returns

    Raises:
        The last exception raised by `fn`
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            attempt += 1
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            delay = policy.delay_for(attempt - 1)
            logger.warning(
                "retrying_after_error",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(exc),
            )
            await sleep(delay)
