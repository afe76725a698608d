"""Retry utilities for management API calls.

Provides exponential backoff for transient failures of the product's REST
management port (splunkd restarting, connection refused while it comes up).
Only connection errors, timeouts and 5xx responses are retried; 4xx client
errors (bad credentials, unknown endpoint) are returned immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, Tuple, Type

import httpx

log = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_MAX = 30.0

RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
)

RETRYABLE_STATUS_CODES = {500, 502, 503, 504}


def retry_request(
    func: Callable[..., httpx.Response],
    *args: Any,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    backoff_max: float = DEFAULT_BACKOFF_MAX,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Call an httpx request function with retry logic.

    Usage::

        response = retry_request(client.get, url, params={"output_mode": "json"})

    The last retryable exception is re-raised once retries are exhausted;
    a retryable status on the final attempt is returned to the caller.
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            response = func(*args, **kwargs)
        except RETRYABLE_EXCEPTIONS as exc:
            last_exception = exc
            if attempt >= max_retries:
                raise
            delay = _compute_delay(attempt, backoff_base, backoff_max)
            log.debug(
                "Retrying request (%s, attempt %d/%d, backoff %.1fs)",
                exc.__class__.__name__,
                attempt + 1,
                max_retries,
                delay,
            )
            sleep(delay)
            continue

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < max_retries:
            delay = _compute_delay(attempt, backoff_base, backoff_max)
            log.debug(
                "Retrying request (HTTP %s, attempt %d/%d, backoff %.1fs)",
                response.status_code,
                attempt + 1,
                max_retries,
                delay,
            )
            sleep(delay)
            continue
        return response

    if last_exception:
        raise last_exception
    raise RuntimeError("Retry logic exhausted")


def _compute_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base * 2^attempt, capped at cap."""
    return min(base * (2 ** attempt), cap)
