"""HTTP retry/backoff shared by every channel provider."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
# Provider Retry-After values above this are not worth holding a sync run for
MAX_RETRY_AFTER_SECONDS = 30.0


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay += random.uniform(0, delay / 2)
    return delay


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Delay requested by a 429/503 Retry-After header (seconds form only)."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(0.0, seconds)


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: frozenset[int] | set[int] | None = None,
) -> httpx.Response:
    """
    Execute a request, retrying connection errors and transient statuses.

    The final response is returned even when its status is retryable; the
    caller decides whether it is an error. Connection errors on the last
    attempt propagate.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        last_attempt = attempt >= max_attempts - 1
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if last_attempt:
                raise
            delay = _backoff(attempt, base_delay, max_delay)
            logger.warning("HTTP request failed (%s), retrying", type(exc).__name__)
        else:
            if response.status_code not in statuses or last_attempt:
                return response
            requested = retry_after_seconds(response)
            if requested is not None and requested > MAX_RETRY_AFTER_SECONDS:
                logger.warning(
                    "HTTP %s with Retry-After %.0fs, not retrying", response.status_code, requested
                )
                return response
            delay = (
                requested if requested is not None else _backoff(attempt, base_delay, max_delay)
            )
            logger.warning("HTTP request returned %s, retrying", response.status_code)

        if delay:
            await asyncio.sleep(delay)

    raise RuntimeError("request_with_retries exhausted without a response")
