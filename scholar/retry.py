"""Retry with exponential backoff for every outbound backend call.

``with_retry`` attempts an async operation up to ``policy.max_attempts``
times, sleeping ``min(initial_delay * 2**(attempt-1), max_delay)`` seconds
between attempts.  The last failure propagates unchanged.  Attempts are strictly
sequential.

``should_retry`` is advisory: ``with_retry`` retries every failure unless the
policy's ``on_retry`` hook re-raises, which is how callers abandon
non-retryable errors early (see ``abort_unless_retryable``).
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
import openai as _openai

from scholar.models import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONNECTION_REFUSED_MARKERS = ("econnrefused", "connection refused", "fetch failed")


async def with_retry(operation: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
    """Run ``operation`` under ``policy`` and return its first successful result."""
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= policy.max_attempts:
                raise

            delay_s = retry_delay(attempt, policy)
            if policy.on_retry is not None:
                policy.on_retry(attempt, exc)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                exc,
                delay_s,
            )
            await asyncio.sleep(delay_s)

    raise RuntimeError("Retry loop exhausted unexpectedly")


def retry_delay(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff delay for a 1-indexed attempt, capped at ``max_delay``."""
    return min(policy.initial_delay * 2 ** (attempt - 1), policy.max_delay)


def log_retry(label: str) -> Callable[[int, BaseException], None]:
    """``on_retry`` hook that only logs the failed attempt."""

    def _hook(attempt: int, exc: BaseException) -> None:
        logger.warning("Retrying %s (attempt %d): %s", label, attempt, exc)

    return _hook


def abort_unless_retryable(label: str) -> Callable[[int, BaseException], None]:
    """``on_retry`` hook that logs, then re-raises failures ``should_retry`` rejects."""

    def _hook(attempt: int, exc: BaseException) -> None:
        logger.warning("Retrying %s (attempt %d): %s", label, attempt, exc)
        if not should_retry(exc):
            logger.warning("Not retrying %s: failure is not transient", label)
            raise exc

    return _hook


# ---------------------------------------------------------------------------
# Retryability
# ---------------------------------------------------------------------------


def is_timeout(exc: BaseException) -> bool:
    return isinstance(
        exc, (TimeoutError, asyncio.TimeoutError, _openai.APITimeoutError, httpx.TimeoutException)
    )


def is_transport_error(exc: BaseException) -> bool:
    if isinstance(exc, (_openai.APIConnectionError, ConnectionError, httpx.TransportError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTION_REFUSED_MARKERS)


def should_retry(exc: BaseException) -> bool:
    """Return True for failures worth another attempt.

    Timeouts, transport failures, 503, 429 and other 5xx statuses are
    transient; remaining 4xx statuses and anything unrecognised are not.
    """
    if is_timeout(exc) or is_transport_error(exc):
        return True

    status_code = extract_status_code(exc)
    if status_code is None:
        return False
    if status_code == 503:
        return True
    if status_code == 429:
        return True
    if 400 <= status_code < 500:
        return False
    return status_code >= 500


def extract_status_code(exc: BaseException) -> int | None:
    """Extract HTTP status code from common exception shapes or message text."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value

    code_attr = getattr(exc, "code", None)
    if isinstance(code_attr, int) and 100 <= code_attr <= 599:
        return code_attr

    message = str(exc)
    patterns = [
        r"Error code:\s*(\d{3})",
        r"status(?:\s*code)?\s*[:=]\s*(\d{3})",
    ]
    for pattern in patterns:
        match = re.search(pattern, message, flags=re.IGNORECASE)
        if match:
            return int(match.group(1))

    return None
