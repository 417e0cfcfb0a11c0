from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
    wait_random,
)

from .exceptions import ConflictError

SleepFn = Callable[[float], Awaitable[Any]]


def conflict_retrying(
    max_attempts: int,
    *,
    step_wait: float = 0.05,
    jitter: float = 0.1,
    sleep: Optional[SleepFn] = None,
    logger: Optional[logging.Logger] = None,
) -> AsyncRetrying:
    """
    Retry policy for optimistic writes that lost a race.

    Only ``ConflictError`` is retried. The wait before attempt ``n + 1`` is
    ``n * step_wait`` plus a uniform random jitter in ``[0, jitter]``, so
    concurrent writers spread out further on every collision.

    Args:
        max_attempts: Total attempts including the first one.
        step_wait: Linear back-off step in seconds (default: 0.05).
        jitter: Upper bound of the random extra wait in seconds (default: 0.1).
        sleep: Awaitable sleep used between attempts (default: asyncio.sleep).
        logger: Logger receiving a record before each back-off sleep.

    Returns:
        An ``AsyncRetrying`` controller. Exhaustion raises ``RetryError``.
    """
    logger = logger or logging.getLogger(__name__)
    return AsyncRetrying(
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_incrementing(start=step_wait, increment=step_wait)
        + wait_random(0, jitter),
        retry=retry_if_exception_type(ConflictError),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        sleep=sleep or asyncio.sleep,
        reraise=False,
    )


__all__ = ["conflict_retrying"]
