"""Async retry with exponential backoff and optional jitter.

Used for two unrelated failure classes: serialization conflicts raised by
the database when two ledger transactions race, and transient Stripe API
errors while reporting meter events.  Callers decide what is retryable,
either by exception type or by a predicate over the raised exception.
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


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
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


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for zero-based *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    should_retry: Callable[[Exception], bool] | None = None,
    operation: str = "operation",
) -> T:
    """Await *fn* with retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument callable returning an awaitable.  It is invoked
        from scratch on every attempt, so it must be safe to call
        repeatedly.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only exceptions whose type appears in this tuple are candidates
        for a retry.  All other exceptions propagate immediately.
    should_retry:
        Optional predicate applied to a candidate exception.  Returning
        ``False`` re-raises it without further attempts.
    operation:
        Label used in log messages.

    Returns
    -------
    T
        The result of *fn* on the first successful attempt.

    Raises
    ------
    Exception
        The last exception raised by *fn* after all attempts are exhausted,
        or the first one rejected by *should_retry*.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retrying %s (%d/%d) after %.2fs: %s",
                operation,
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    logger.error(
        "%s failed after %d attempts: %s",
        operation,
        config.max_retries + 1,
        last_exception,
    )
    raise last_exception
