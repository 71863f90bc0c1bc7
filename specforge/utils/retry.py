"""Bounded exponential-backoff retries for provider calls.

Retries only transient faults (rate limits, network failures, 502/503/504),
bounded by attempt count and by total wall-clock time. Rate limits back off
from a larger base delay than other transient faults.
"""

import logging
import random
from typing import Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    stop_before_delay,
)

from specforge.errors import RetryExhausted, SpecForgeError, TransientProviderFault

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_MAX_DURATION = 5 * 60.0  # seconds
BASE_DELAY = 1.0
RATE_LIMIT_BASE_DELAY = 10.0
MAX_DELAY = 60.0
MAX_JITTER = 1.0

TRANSIENT_STATUS_CODES = {429, 502, 503, 504}

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate_limit", "too many requests")
_NETWORK_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "econnrefused",
    "connection refused",
    "socket hang up",
    "connection error",
    "502",
    "503",
    "504",
)


def _status_code(exc: BaseException) -> int | None:
    """HTTP status carried by an exception, if any.

    Covers httpx.HTTPStatusError and provider SDK errors exposing
    `status_code` directly or on an attached response.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    code = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(code, int):
        return code
    # google.api_core exceptions carry the HTTP status as `code`
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) and 100 <= code < 600 else None


def is_rate_limit(exc: BaseException) -> bool:
    if _status_code(exc) == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def is_transient(exc: BaseException) -> bool:
    """Return True if the exception is a transient provider fault worth retrying."""
    if not isinstance(exc, Exception) or isinstance(exc, RetryExhausted):
        return False
    if isinstance(exc, TransientProviderFault):
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    code = _status_code(exc)
    if code is not None:
        return code in TRANSIENT_STATUS_CODES
    if isinstance(exc, SpecForgeError):
        return False
    if is_rate_limit(exc):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _NETWORK_MARKERS)


def compute_delay(attempt: int, rate_limited: bool, jitter: float | None = None) -> float:
    """Delay in seconds before retrying after failed attempt `attempt` (1-indexed)."""
    base = RATE_LIMIT_BASE_DELAY if rate_limited else BASE_DELAY
    delay = min(base * 2 ** (attempt - 1), MAX_DELAY)
    if jitter is None:
        jitter = random.random() * MAX_JITTER
    return delay + jitter


def _backoff(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception()
    return compute_delay(retry_state.attempt_number, exc is not None and is_rate_limit(exc))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    max_duration: float = DEFAULT_MAX_DURATION,
    is_transient_error: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    label: str = "operation",
) -> T:
    """Await `operation()` with exponential backoff on transient errors.

    `max_retries` is the total number of attempts. Gives up when that count
    is reached, when `max_duration` seconds have elapsed, or when the next
    delay would run past `max_duration`; the error raised then is
    RetryExhausted carrying the last underlying fault. Non-transient errors
    are raised immediately, unchanged.
    """
    predicate = is_transient_error or is_transient

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        logger.warning(
            "Transient error in %s: %r. Retrying in %.1fs (attempt %d/%d)...",
            label, exc, delay, retry_state.attempt_number, max_retries,
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, exc, delay)

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries) | stop_before_delay(max_duration),
        wait=_backoff,
        retry=retry_if_exception(predicate),
        before_sleep=_before_sleep,
        **kwargs,
    )

    async def _attempt() -> T:
        return await operation()

    try:
        return await retrying(_attempt)
    except RetryError as exc:
        attempt = exc.last_attempt
        last_error = attempt.exception()
        if attempt.attempt_number >= max_retries:
            reason = f"Max retries ({max_retries}) exceeded"
        else:
            reason = f"Retry window ({max_duration:.0f}s) exceeded"
        raise RetryExhausted(
            f"{label}: {reason}. Last error: {last_error}",
            last_error=last_error,
            attempts=attempt.attempt_number,
        ) from last_error
