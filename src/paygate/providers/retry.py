"""Exponential backoff with jitter for outbound provider calls.

Wraps checkout/portal session creation and PayPal order create/capture.
Credential exchange and webhook verification are never retried: a failure
there is reported to the pipeline, which decides between soft-pass and reject.

A call is retried on a transport error or a 429/5xx answer from the provider.
A Retry-After header from the provider overrides the computed delay.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MIN_DELAY_SECONDS = 0.05


def _retry_reason(exc: Exception) -> str | None:
    """Short label for a retryable failure, or None when it must propagate."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return f"HTTP {status}" if status in RETRYABLE_STATUS_CODES else None
    if isinstance(exc, httpx.TransportError):
        return type(exc).__name__
    return None


def _provider_retry_after(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        # HTTP-date form; fall back to computed backoff
        return None


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.3,
) -> Callable:
    """Decorator for provider coroutines.

    Args:
        max_retries: Attempts after the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on any single delay, Retry-After included.
        jitter: Fraction of the delay randomised in both directions.
    """

    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await fn(*args, **kwargs)
                except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                    reason = _retry_reason(exc)
                    if reason is None or attempt >= max_retries:
                        raise
                    response = exc.response if isinstance(exc, httpx.HTTPStatusError) else None
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, response)
                    attempt += 1
                    logger.warning(
                        "Provider call %s failed (%s), retry %d/%d in %.2fs",
                        fn.__name__,
                        reason,
                        attempt,
                        max_retries,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Delay before retry number ``attempt + 1``."""
    requested = _provider_retry_after(response)
    if requested is not None:
        return min(requested, max_delay)

    delay = min(base_delay * (2**attempt), max_delay)
    spread = delay * jitter
    return max(MIN_DELAY_SECONDS, delay + random.uniform(-spread, spread))
