"""
balance_ingest/retry.py

Bounded retry with exponential backoff for async callables.

The policy is data (`RetryPolicy`) and the loop is a combinator
(`retry_async`) that takes its `sleep` as a parameter, so tests can pass a
recording fake instead of waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger

T = TypeVar("T")


def exponential_backoff(attempt: int) -> float:
    """Seconds to wait after failed `attempt` (1-based): 2, 4, 8, ..."""
    return float(2**attempt)


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    Attributes:
        max_attempts: Total attempts including the first try.
        backoff: Maps the 1-based number of the failed attempt to a delay in
            seconds.
        retry_on: Exception types worth retrying. Anything else propagates
            immediately.
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = exponential_backoff
    retry_on: tuple[type[BaseException], ...] = field(default=(Exception,))

    def delays(self) -> list[float]:
        return [self.backoff(attempt) for attempt in range(1, self.max_attempts)]


class RetryExhausted(Exception):
    """Raised by `retry_async` once every attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Await `fn()` until it succeeds or `policy.max_attempts` is reached.

    Raises:
        RetryExhausted: Wrapping the last error when every attempt failed.
    """
    attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except policy.retry_on as exc:
            last_error = exc
            logger.warning("{} attempt {}/{} failed: {}", label, attempt, attempts, exc)
            if attempt < attempts:
                delay = policy.backoff(attempt)
                logger.info("Retrying {} in {:.1f}s", label, delay)
                await sleep(delay)

    raise RetryExhausted(attempts, last_error)
