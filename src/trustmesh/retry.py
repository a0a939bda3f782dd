"""
Bounded exponential backoff for transient infrastructure failures.

Only errors flagged ``retryable`` are retried; security and configuration
rejections propagate on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from trustmesh.exceptions import TrustMeshError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(
    attempts: int,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    jitter: float = 0.1,
) -> list[float]:
    """Return the sleep intervals between ``attempts`` tries."""
    delays = []
    for i in range(max(attempts - 1, 0)):
        delay = min(max_delay, base_delay * (2 ** i))
        delays.append(delay + random.uniform(0, delay * jitter))
    return delays


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or retries are exhausted.

    Args:
        operation: Zero-argument coroutine factory.
        attempts: Total number of tries, including the first.
        base_delay: First backoff interval in seconds.
        max_delay: Upper bound on a single backoff interval.
        description: Label used in log messages.

    Raises:
        The last retryable error once attempts are exhausted, or any
        non-retryable error immediately.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be positive, got: {attempts}")
    delays = backoff_delays(attempts, base_delay, max_delay)
    for attempt in range(attempts):
        try:
            return await operation()
        except TrustMeshError as e:
            if not e.retryable or attempt >= len(delays):
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt + 1,
                attempts,
                e,
                delays[attempt],
            )
            await asyncio.sleep(delays[attempt])
    raise AssertionError("unreachable")
