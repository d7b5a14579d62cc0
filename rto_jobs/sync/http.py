"""
HTTP helpers for upstream clients.

`request_with_retry` retries transient failures (429, 5xx and network errors)
with exponential backoff and jitter, honouring `Retry-After` when the upstream
sends one. Each client owns its `RateLimiter`, so two clients never share a
request budget.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Iterable

import httpx
import structlog

from rto_jobs.monitoring.metrics import get_metrics

logger = structlog.get_logger()


RETRY_STATUSES = {429, 500, 502, 503, 504}


class RateLimiter:
    """Spaces requests evenly so a client stays under `rate_per_minute`."""

    def __init__(self, rate_per_minute: int) -> None:
        self.rate_per_minute = int(rate_per_minute)
        self._interval = 60.0 / float(self.rate_per_minute)
        self._next_allowed = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def per_minute(cls, rate: int | None) -> "RateLimiter | None":
        """A limiter for `rate`, or None when limiting is switched off."""
        if not rate or rate <= 0:
            return None
        return cls(rate)

    async def wait(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if now < self._next_allowed:
                await asyncio.sleep(self._next_allowed - now)
            self._next_allowed = max(now, self._next_allowed) + self._interval


def _retry_delay(attempt: int, base_backoff: float, max_backoff: float) -> float:
    delay = min(max_backoff, base_backoff * (2 ** (attempt - 1)))
    return delay + random.uniform(0, delay / 2)


def _retry_after(response: httpx.Response, fallback: float) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return fallback


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_attempts: int = 5,
    retry_statuses: Iterable[int] | None = None,
    base_backoff: float = 0.5,
    max_backoff: float = 8.0,
    rate_limiter: RateLimiter | None = None,
    provider: str | None = None,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request with exponential backoff + jitter.

    The last response is returned as-is once attempts run out; callers map
    error statuses to their own exceptions.
    """
    retry_statuses = set(retry_statuses or RETRY_STATUSES)

    attempt = 0
    while True:
        attempt += 1
        try:
            if rate_limiter is not None:
                await rate_limiter.wait()
            response = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            if attempt >= max_attempts:
                raise

            delay = _retry_delay(attempt, base_backoff, max_backoff)
            if provider:
                get_metrics().track_http_retry(provider, "network", 0)
            logger.warning(
                "Retrying request due to network error",
                provider=provider,
                url=url,
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code not in retry_statuses or attempt >= max_attempts:
            return response

        delay = _retry_after(response, base_backoff)
        if delay is None:
            delay = _retry_delay(attempt, base_backoff, max_backoff)
        if provider:
            get_metrics().track_http_retry(provider, "status", response.status_code)
        logger.warning(
            "Retrying request due to status",
            provider=provider,
            status_code=response.status_code,
            url=url,
            attempt=attempt,
            delay=delay,
        )
        await asyncio.sleep(delay)
