"""
Retry utilities with exponential backoff.

Bounded retries with jitter for transient failures (network errors,
timeouts, 5xx). Used when (re)ingesting documents.
"""
import asyncio
import random
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when all retries have been exhausted."""

    def __init__(self, message: str, attempts: int, last_exception: Exception):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule; max_retries=3 means 4 attempts in total."""
    max_retries: int = 3
    initial_backoff: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 10.0
    jitter_percent: float = 0.25  # ±25%

    @classmethod
    def from_settings(cls) -> 'RetryPolicy':
        return cls(
            max_retries=getattr(settings, 'REPROCESS_MAX_RETRIES', 3),
            initial_backoff=getattr(settings, 'REPROCESS_INITIAL_BACKOFF', 1.0),
            max_backoff=getattr(settings, 'REPROCESS_MAX_BACKOFF', 10.0),
        )


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """
    Calculate backoff time with exponential increase and jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        policy: Backoff schedule

    Returns:
        Backoff time in seconds
    """
    backoff = policy.initial_backoff * (policy.backoff_multiplier ** attempt)
    backoff = min(backoff, policy.max_backoff)

    jitter_range = backoff * policy.jitter_percent
    backoff += random.uniform(-jitter_range, jitter_range)

    return max(0.0, backoff)


RETRIABLE_PATTERNS = (
    'connection',
    'connect to',
    'timeout',
    'timed out',
    'temporarily unavailable',
    'error: 5',  # "... service error: 503"
    'overloaded',
    'busy',
    'no embedding in response',  # empty response, might work on retry
)

NON_RETRIABLE_PATTERNS = (
    'error: 4',  # "... service error: 404"
    'model not found',
    'invalid',
    'not supported',
    'not configured',
    'dimension',
)


def is_retriable_error(exception: Exception) -> bool:
    """
    Determine if an exception is retriable.

    Returns True for:
    - Connection errors (network issues)
    - Timeout errors
    - 5xx status codes

    Returns False for:
    - 4xx errors (client error, won't help to retry)
    - Validation and configuration errors
    """
    if isinstance(exception, (httpx.TransportError, asyncio.TimeoutError)):
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code >= 500

    error_msg = str(exception).lower()

    for pattern in NON_RETRIABLE_PATTERNS:
        if pattern in error_msg:
            return False

    for pattern in RETRIABLE_PATTERNS:
        if pattern in error_msg:
            return True

    return False


async def retry_async(
    func: Callable[[], Awaitable],
    policy: RetryPolicy,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Callable[[Exception], bool] = is_retriable_error,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
):
    """
    Await a coroutine factory with retry and exponential backoff.

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt
        policy: Backoff schedule
        exceptions: Exception types eligible for retry
        should_retry: Predicate deciding whether a caught error is transient
        on_retry: Optional callback(attempt, exception, backoff) before each retry
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Result of func() if successful

    Raises:
        RetryExhausted: If all attempts fail with transient errors
        Exception: The original error if it is not retriable
    """
    last_exception = None

    for attempt in range(policy.max_retries + 1):
        try:
            return await func()
        except exceptions as e:
            last_exception = e

            if not should_retry(e):
                logger.warning(f"Non-retriable error on attempt {attempt + 1}: {e}")
                raise

            if attempt >= policy.max_retries:
                break

            backoff = calculate_backoff(attempt, policy)
            logger.warning(
                f"Retriable error on attempt {attempt + 1}/{policy.max_retries + 1}: {e}. "
                f"Retrying in {backoff:.2f}s"
            )

            if on_retry:
                on_retry(attempt, e, backoff)

            await sleep(backoff)

    raise RetryExhausted(
        f"All {policy.max_retries + 1} attempts failed. Last error: {last_exception}",
        attempts=policy.max_retries + 1,
        last_exception=last_exception
    )
