"""
Accelerate LMS API client.

Bearer API key plus `X-Organization-ID`; list endpoints are page-number
paged and report `pagination.totalPages`.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from rto_jobs.config import Settings
from rto_jobs.kernel.errors import UpstreamError
from rto_jobs.sync.http import RateLimiter, request_with_retry
from rto_jobs.sync.reconciliation import UpstreamPage

logger = structlog.get_logger()

PROVIDER = "lms"


class LmsClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        organization_id: str | None,
        timeout_seconds: float = 30.0,
        rate_limit_per_minute: int | None = 60,
        transport: httpx.AsyncBaseTransport | None = None,
        max_attempts: int = 3,
        base_backoff: float = 0.5,
    ) -> None:
        self._api_key = api_key
        self._organization_id = organization_id
        self._rate_limiter = RateLimiter.per_minute(rate_limit_per_minute)
        self._max_attempts = max_attempts
        self._base_backoff = base_backoff
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key or ''}",
                "X-Organization-ID": organization_id or "",
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LmsClient":
        return cls(
            base_url=settings.lms_api_url,
            api_key=settings.lms_api_key,
            organization_id=settings.lms_organization_id,
            timeout_seconds=settings.lms_timeout_seconds,
            rate_limit_per_minute=settings.lms_rate_limit_per_minute,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self._organization_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_trainers(self, page: int = 1, per_page: int = 100) -> UpstreamPage:
        return await self._fetch_page("/trainers", page, per_page)

    async def fetch_students(self, page: int = 1, per_page: int = 100) -> UpstreamPage:
        return await self._fetch_page("/students", page, per_page)

    async def fetch_enrollments(self, page: int = 1, per_page: int = 100) -> UpstreamPage:
        return await self._fetch_page("/enrollments", page, per_page)

    async def _fetch_page(self, path: str, page: int, per_page: int) -> UpstreamPage:
        body = await self._get(path, params={"page": page, "per_page": per_page})
        pagination = body.get("pagination") or {}
        return UpstreamPage(
            items=list(body.get("data") or []),
            page=int(pagination.get("page") or page),
            per_page=int(pagination.get("perPage") or per_page),
            total=pagination.get("total"),
            total_pages=pagination.get("totalPages"),
        )

    async def _get(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        if not self.is_configured:
            raise UpstreamError(message="Accelerate API is not configured", code="lms.not_configured")

        try:
            response = await request_with_retry(
                self._client,
                "GET",
                path,
                params=params,
                max_attempts=self._max_attempts,
                base_backoff=self._base_backoff,
                rate_limiter=self._rate_limiter,
                provider=PROVIDER,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(
                message="No response from Accelerate API. Check your network connection.",
                code="lms.unreachable",
                meta={"path": path, "error": str(exc)},
            ) from exc

        if response.status_code >= 400:
            raise _error_for(response, path)
        return response.json()


def _error_for(response: httpx.Response, path: str) -> UpstreamError:
    status = response.status_code
    try:
        detail = (response.json() or {}).get("message")
    except ValueError:
        detail = None

    if status == 401:
        message = "Accelerate API authentication failed. Check your API key."
    elif status == 403:
        message = "Accelerate API access forbidden. Check your permissions."
    elif status == 429:
        message = "Accelerate API rate limit exceeded. Please try again later."
    elif status >= 500:
        message = f"Accelerate API server error: {detail or 'Unknown error'}"
    else:
        message = detail or f"Accelerate API error: {status}"

    logger.warning("LMS request failed", path=path, status_code=status)
    return UpstreamError(message=message, code="lms.request_failed", meta={"path": path, "status_code": status})
