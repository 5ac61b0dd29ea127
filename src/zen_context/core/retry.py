"""Retry with exponential backoff for the remote embeddings endpoint.

Backoff waits go through a ``threading.Event`` so a caller shutting down can
interrupt a retry loop instead of sleeping it out.
"""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from email.utils import parsedate_to_datetime
from typing import Any, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transport failures worth another attempt
RETRYABLE_NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)

# 408 request timeout, 429 rate limited, 5xx gateway/server trouble
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Upper bound for any single wait, including server-provided Retry-After
MAX_RETRY_DELAY = 300.0

_PERMANENT_HINTS = ("invalid", "unauthorized", "forbidden", "not found", "bad request")
_TRANSIENT_HINTS = ("timeout", "timed out", "connection", "temporarily", "unavailable", "rate limit")
_STATUS_IN_MESSAGE = re.compile(
    r"\b(?:%s)\b" % "|".join(str(c) for c in sorted(RETRYABLE_STATUS_CODES))
)


def is_retryable_error(error: Exception) -> bool:
    """True for transient failures: network trouble, timeouts, 429 and 5xx.

    Programming errors and 4xx responses (other than 408/429) are permanent.
    Anything else is judged by its message.
    """
    if isinstance(error, RETRYABLE_NETWORK_EXCEPTIONS):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (TypeError, ValueError, AttributeError, LookupError, AssertionError)):
        return False

    message = str(error).lower()
    if any(hint in message for hint in _PERMANENT_HINTS):
        return False
    if any(hint in message for hint in _TRANSIENT_HINTS):
        return True
    return _STATUS_IN_MESSAGE.search(message) is not None


def parse_retry_after(response: httpx.Response | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None

    try:
        delay = float(value)
    except ValueError:
        try:
            delay = parsedate_to_datetime(value).timestamp() - time.time()
        except (ValueError, TypeError):
            logger.debug("Unparseable Retry-After header: %r", value)
            return None

    return max(0.0, min(delay, MAX_RETRY_DELAY))


def backoff_delay(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter: float = 0.25,
) -> float:
    """min(base_delay * 2^attempt + random(0, jitter), max_delay)"""
    return min(base_delay * (2 ** attempt) + random.random() * jitter, max_delay)


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter: float = 0.25,
    cancel_event: threading.Event | None = None,
    **kwargs: Any,
) -> T:
    """
    Call ``func``, retrying transient failures with exponential backoff.

    A ``Retry-After`` header on a failed response takes precedence over the
    computed backoff.

    Args:
        func: Function to call
        max_retries: Retry attempts after the first call
        base_delay: Base delay in seconds
        max_delay: Maximum computed delay
        jitter: Random jitter range (0 to jitter seconds)
        cancel_event: When set during a backoff wait, the last error is
            re-raised immediately

    Raises:
        The last exception if it is not retryable, retries are exhausted,
        or the wait is cancelled
    """
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_error(e):
                raise
            if attempt >= max_retries:
                if max_retries:
                    logger.warning("Giving up after %d retries: %s", max_retries, str(e)[:100])
                raise

            delay = parse_retry_after(e.response) if isinstance(e, httpx.HTTPStatusError) else None
            if delay is None:
                delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            attempt += 1
            logger.info("Retry %d/%d in %.2fs after: %s", attempt, max_retries, delay, str(e)[:80])

            if cancel_event is None:
                time.sleep(delay)
            elif cancel_event.wait(delay):
                logger.debug("Retry wait cancelled")
                raise


__all__ = [
    "call_with_retry",
    "backoff_delay",
    "parse_retry_after",
    "is_retryable_error",
    "MAX_RETRY_DELAY",
    "RETRYABLE_NETWORK_EXCEPTIONS",
    "RETRYABLE_STATUS_CODES",
]
