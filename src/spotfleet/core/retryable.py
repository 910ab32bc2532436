"""Bounded polling and retry primitives.

Two tools with different jobs:

- ``retry_until``: poll an action at a fixed interval until it yields a
  result, bounded by attempt count and/or a deadline. Used for SSH
  reachability waits, spot fulfillment waits and running-state waits.
- ``with_retry``: exponential backoff for idempotent transport calls
  (webhook POST, checkpoint read for alert bodies). Only transient errors
  are retried.

Usage:
    from spotfleet.core.retryable import retry_until, with_retry

    outcome = await retry_until(lambda: probe(ip), interval=5.0, max_attempts=30)
    if outcome.timed_out:
        ...

    body = await with_retry(lambda: store.get(key))
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx
from botocore.exceptions import ClientError, EndpointConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Bounded polling
# =============================================================================


@dataclass
class RetryOutcome(Generic[T]):
    """Result of ``retry_until``: ``value`` is set unless ``timed_out``."""

    value: T | None
    attempts: int
    timed_out: bool

    @property
    def ok(self) -> bool:
        return not self.timed_out


async def retry_until(
    action: Callable[[], Awaitable[T | None]],
    interval: float,
    max_attempts: int | None = None,
    deadline: float | None = None,
) -> RetryOutcome[T]:
    """Call ``action`` until it returns a truthy value.

    Args:
        action: Factory creating a new coroutine per attempt. Falsy results
                (None, False, "") count as "not yet".
        interval: Seconds to sleep between attempts
        max_attempts: Attempt cap (None = unbounded by count)
        deadline: Wall-clock budget in seconds (None = unbounded by time)

    Exceptions raised by ``action`` propagate; catch inside the action when
    an error should count as "not yet".
    """
    if max_attempts is None and deadline is None:
        raise ValueError("retry_until needs max_attempts or deadline")

    started = time.monotonic()
    attempt = 0
    while True:
        attempt += 1
        value = await action()
        if value:
            return RetryOutcome(value=value, attempts=attempt, timed_out=False)

        if max_attempts is not None and attempt >= max_attempts:
            return RetryOutcome(value=None, attempts=attempt, timed_out=True)

        sleep_for = interval
        if deadline is not None:
            remaining = deadline - (time.monotonic() - started)
            if remaining <= 0:
                return RetryOutcome(value=None, attempts=attempt, timed_out=True)
            sleep_for = min(interval, remaining)
        await asyncio.sleep(sleep_for)


# =============================================================================
# Error classification
# =============================================================================

HTTPX_RETRYABLE = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
)

AWS_RETRYABLE_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalError",
    "InternalServerError",
    "SlowDown",
})

AWS_NON_RETRYABLE_CODES = frozenset({
    "AccessDenied",
    "UnauthorizedOperation",
    "AuthFailure",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoSuchBucket",
    "InvalidParameterValue",
    "InvalidAMIID.NotFound",
    "InvalidKeyPair.NotFound",
})


def classify_error(exc: BaseException) -> str:
    """Classify error as 'retryable', 'permanent', or 'unknown'."""
    if isinstance(exc, (asyncio.TimeoutError, EndpointConnectionError)):
        return "retryable"

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return "retryable"
        return "permanent"
    if isinstance(exc, HTTPX_RETRYABLE):
        return "retryable"
    if isinstance(exc, httpx.InvalidURL):
        return "permanent"

    if isinstance(exc, ClientError):
        error_code = exc.response.get("Error", {}).get("Code", "")
        if error_code in AWS_RETRYABLE_CODES:
            return "retryable"
        if error_code in AWS_NON_RETRYABLE_CODES:
            return "permanent"
        return "unknown"

    return "unknown"


# =============================================================================
# Retry utility
# =============================================================================


async def with_retry(
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> T:
    """Execute async operation with exponential backoff retry.

    Only retryable errors are retried; anything else is raised immediately.

    Args:
        coro_factory: Factory function that creates new coroutine for each attempt
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 30.0)
    """
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except Exception as exc:
            error_class = classify_error(exc)
            if error_class != "retryable" or attempt == max_retries:
                raise

            delay = min(base_delay * (2**attempt), max_delay)
            # Jitter: 50% ~ 150% of delay
            jittered_delay = delay * (0.5 + random.random())
            logger.warning(
                "Retryable error (attempt %d/%d, retry in %.1fs): %s",
                attempt + 1,
                max_retries + 1,
                jittered_delay,
                exc,
                extra={
                    "error_class": error_class,
                    "attempt": attempt + 1,
                    "delay": jittered_delay,
                },
            )
            await asyncio.sleep(jittered_delay)

    raise RuntimeError("Unexpected state in with_retry")
