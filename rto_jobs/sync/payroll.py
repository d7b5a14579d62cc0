"""
Xero Payroll AU client.

Access tokens come from an injected provider (token exchange and refresh are
owned elsewhere). Xero pages employees 100 at a time without reporting a page
count, so a short page ends pagination.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx
import structlog

from rto_jobs.config import Settings
from rto_jobs.kernel.errors import UpstreamError
from rto_jobs.sync.http import RateLimiter, request_with_retry
from rto_jobs.sync.reconciliation import UpstreamPage

logger = structlog.get_logger()

PROVIDER = "payroll"
PAGE_SIZE = 100

TokenProvider = Callable[[], Awaitable[str | None]]


def static_token(token: str | None) -> TokenProvider:
    async def _provide() -> str | None:
        return token

    return _provide


class PayrollClient:
    def __init__(
        self,
        *,
        base_url: str,
        tenant_id: str | None,
        token_provider: TokenProvider,
        timeout_seconds: float = 30.0,
        rate_limit_per_minute: int | None = 60,
        transport: httpx.AsyncBaseTransport | None = None,
        max_attempts: int = 3,
        base_backoff: float = 0.5,
    ) -> None:
        self._tenant_id = tenant_id
        self._token_provider = token_provider
        self._rate_limiter = RateLimiter.per_minute(rate_limit_per_minute)
        self._max_attempts = max_attempts
        self._base_backoff = base_backoff
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayrollClient":
        return cls(
            base_url=settings.payroll_api_url,
            tenant_id=settings.payroll_tenant_id,
            token_provider=static_token(settings.payroll_access_token),
            timeout_seconds=settings.payroll_timeout_seconds,
            rate_limit_per_minute=settings.payroll_rate_limit_per_minute,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._tenant_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_employees(self, page: int = 1, per_page: int = PAGE_SIZE) -> UpstreamPage:
        # Xero fixes the page size; `per_page` only tells the engine what a full page is.
        body = await self._get("/Employees", params={"page": page})
        return UpstreamPage(
            items=list(body.get("Employees") or []),
            page=page,
            per_page=PAGE_SIZE,
        )

    async def _get(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        token = await self._token_provider()
        if not token or not self._tenant_id:
            raise UpstreamError(
                message="No active Xero connection found. Please connect to Xero first.",
                code="payroll.not_connected",
            )

        try:
            response = await request_with_retry(
                self._client,
                "GET",
                path,
                params=params,
                headers={"Authorization": f"Bearer {token}", "Xero-tenant-id": self._tenant_id},
                max_attempts=self._max_attempts,
                base_backoff=self._base_backoff,
                rate_limiter=self._rate_limiter,
                provider=PROVIDER,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(
                message="Failed to fetch employees from Xero",
                code="payroll.unreachable",
                meta={"path": path, "error": str(exc)},
            ) from exc

        if response.status_code == 401:
            raise UpstreamError(
                message="Xero access token rejected. Reconnect to Xero.",
                code="payroll.unauthorized",
                meta={"path": path, "status_code": 401},
            )
        if response.status_code >= 400:
            logger.warning("Payroll request failed", path=path, status_code=response.status_code)
            raise UpstreamError(
                message=f"Xero API error: {response.status_code}",
                code="payroll.request_failed",
                meta={"path": path, "status_code": response.status_code},
            )
        return response.json()
