"""
Resilience helpers
Timeouts and bounded exponential-backoff retries for every external call.
Only transient failures (rate limits, 5xx, resets, timeouts) are retried.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
import openai
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ragcore.config import Settings
from ragcore.errors import UpstreamServiceError

logger = structlog.get_logger()

T = TypeVar("T")

_TRANSIENT_FRAGMENTS = (
    "429",
    "rate_limit",
    "rate limit",
    "503",
    "service unavailable",
    "502",
    "bad gateway",
    "504",
    "gateway timeout",
    "econnrefused",
    "econnreset",
    "connection reset",
    "connection refused",
    "etimedout",
    "timed out",
    "timeout",
    "fetch failed",
    "network",
    "socket hang up",
)


def is_transient_error(error: BaseException) -> bool:
    """Classify an error as worth retrying."""
    if isinstance(error, openai.APIStatusError):
        return error.status_code == 429 or error.status_code >= 500
    if isinstance(error, (openai.APIConnectionError, openai.RateLimitError)):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        return status == 429 or status >= 500

    message = str(error).lower()
    if "500" in message and "internal server error" in message:
        return True
    return any(fragment in message for fragment in _TRANSIENT_FRAGMENTS)


@dataclass(frozen=True)
class RetryPolicy:
    """How one kind of external call is retried and timed out."""
    attempts: int = 3
    initial_delay: float = 2.0
    max_delay: float = 10.0
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings, timeout: float) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            timeout=timeout,
        )


def _log_retry(label: str):
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient error, retrying",
            operation=label,
            attempt=retry_state.attempt_number,
            wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else 0,
            error=str(error),
        )
    return before_sleep


async def with_timeout(operation: Callable[[], Awaitable[T]], timeout: float, label: str) -> T:
    """Run one attempt of ``operation``, failing with TimeoutError after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise asyncio.TimeoutError(f"Operation timed out after {timeout}s ({label})") from e


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
) -> T:
    """
    Run ``operation`` under a per-attempt timeout with bounded retries.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count, backoff and timeout
        label: Operation name used in logs and errors

    Returns:
        The operation's result

    Raises:
        UpstreamServiceError: On a non-transient error or once attempts are exhausted.
            The last underlying error is chained.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(policy.attempts, 1)),
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            min=0,
            max=policy.max_delay,
        ),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_log_retry(label),
        reraise=True,
    )

    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                return await with_timeout(operation, policy.timeout, label)
    except UpstreamServiceError:
        raise
    except Exception as e:
        logger.error("External call failed", operation=label, attempts=attempts, error=str(e))
        raise UpstreamServiceError(label, str(e), attempts=attempts) from e
    raise UpstreamServiceError(label, "no attempt was made", attempts=0)
