"""Exponential backoff for outbound calls that are safe to repeat.

Only use this around calls that cannot produce a second side effect when
repeated, e.g. notification delivery or a connection attempt that never
reached the remote host.  Settlement submissions are never wrapped in a
generic retry.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=2,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=0.5,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, policy: RetryPolicy) -> float:
    """Return the backoff delay for zero-based *attempt* given *policy*."""
    delay: float = min(policy.base_delay * (2**attempt), policy.max_delay)
    if policy.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retryable_exceptions: tuple[type[Exception], ...],
    *,
    operation: str = "call",
) -> T:
    """Await *fn* with exponential backoff on *retryable_exceptions*.

    Parameters
    ----------
    fn:
        Zero-argument coroutine factory.  It is invoked afresh on every
        attempt.
    policy:
        Retry parameters (see :class:`RetryPolicy`).
    retryable_exceptions:
        Only these exception types trigger another attempt; everything else
        propagates immediately.
    operation:
        Label used in log lines.

    Returns
    -------
    T
        The result of the first successful attempt.

    Raises
    ------
    Exception
        The last retryable exception once attempts are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except retryable_exceptions as exc:
            if attempt >= policy.max_retries:
                raise
            delay = compute_delay(attempt, policy)
            attempt += 1
            logger.warning(
                "Retry %d/%d for %s after %.2fs: %s",
                attempt,
                policy.max_retries,
                operation,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
