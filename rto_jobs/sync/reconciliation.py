"""
Reconciliation Engine

Pulls paged records from an upstream system and converges local records and
their MappingRecords onto them. Each record commits (or rolls back) on its own
so one bad record never sinks the run.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rto_jobs.db.client import Database
from rto_jobs.kernel.time import Clock, utc_now
from rto_jobs.monitoring.metrics import Metrics, get_metrics
from rto_jobs.sync.mapping_store import MappingStore
from rto_jobs.sync.sync_log import SyncLogStore, SyncStatus

logger = structlog.get_logger()


class UpstreamPage(BaseModel):
    """One page of upstream records.

    `total_pages` is None when the upstream does not report it; a short page
    then marks the end.
    """

    items: list[dict[str, Any]] = Field(default_factory=list)
    page: int = 1
    per_page: int = 100
    total: int | None = None
    total_pages: int | None = None

    def has_more(self) -> bool:
        if not self.items:
            return False
        if self.total_pages is not None:
            return self.page < self.total_pages
        return len(self.items) >= self.per_page


class SyncResult(BaseModel):
    sync_type: str
    status: SyncStatus
    records_total: int = 0
    records_synced: int = 0
    records_failed: int = 0
    error_message: str | None = None
    details: list[str] = Field(default_factory=list)
    sync_log_id: str | None = None


PageFetcher = Callable[[int, int], Awaitable[UpstreamPage]]


class RecordAdapter(Protocol):
    """How one upstream record type maps onto a local table."""

    external_type: str
    internal_type: str
    label: str

    def external_id(self, record: dict[str, Any]) -> str: ...

    def describe(self, record: dict[str, Any]) -> str: ...

    def natural_key(self, record: dict[str, Any]) -> str | None: ...

    def metadata(self, record: dict[str, Any]) -> dict[str, Any] | None: ...

    async def find_by_natural_key(self, session: AsyncSession, key: str) -> str | None: ...

    async def update(self, session: AsyncSession, internal_id: str, record: dict[str, Any]) -> None: ...

    async def create(self, session: AsyncSession, record: dict[str, Any]) -> str: ...


class ReconciliationEngine:
    def __init__(
        self,
        db: Database,
        mappings: MappingStore,
        sync_logs: SyncLogStore,
        *,
        clock: Clock = utc_now,
        page_size: int = 100,
        max_pages: int = 500,
        metrics: Metrics | None = None,
    ) -> None:
        self._db = db
        self._mappings = mappings
        self._sync_logs = sync_logs
        self._clock = clock
        self._page_size = max(1, int(page_size))
        self._max_pages = max(1, int(max_pages))
        self._metrics = metrics or get_metrics()

    async def run(
        self,
        sync_type: str,
        fetch_page: PageFetcher,
        adapter: RecordAdapter,
        *,
        triggered_by: str | None = None,
    ) -> SyncResult:
        """
        Reconcile every upstream record of one type.

        A page fetch error fails the run immediately; record errors are
        counted and the run carries on.
        """
        sync_log_id = await self._sync_logs.start(sync_type, triggered_by=triggered_by)
        log = logger.bind(sync_type=sync_type, sync_log_id=sync_log_id)
        log.info("Sync started", triggered_by=triggered_by)

        details: list[str] = []
        records_total = 0
        records_synced = 0
        records_failed = 0
        seen = 0
        page = 1

        try:
            while True:
                if page > self._max_pages:
                    log.warning("Sync stopped at page limit", max_pages=self._max_pages)
                    details.append(f"Stopped after {self._max_pages} pages (page limit reached)")
                    break

                response = await fetch_page(page, self._page_size)
                seen += len(response.items)
                records_total = response.total if response.total is not None else seen

                for record in response.items:
                    ok, message = await self._reconcile_record(adapter, record)
                    details.append(message)
                    if ok:
                        records_synced += 1
                    else:
                        records_failed += 1

                if not response.has_more():
                    break
                page += 1
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            log.error("Sync failed", page=page, error=error_message)
            await self._sync_logs.finish(
                sync_log_id,
                status=SyncStatus.FAILED,
                records_total=records_total,
                records_synced=records_synced,
                records_failed=records_failed,
                error_message=error_message,
                details=details,
            )
            self._metrics.track_sync_run(
                sync_type, SyncStatus.FAILED.value, synced=records_synced, failed=records_failed
            )
            return SyncResult(
                sync_type=sync_type,
                status=SyncStatus.FAILED,
                records_total=records_total,
                records_synced=records_synced,
                records_failed=records_failed,
                error_message=error_message,
                details=details,
                sync_log_id=sync_log_id,
            )

        await self._sync_logs.finish(
            sync_log_id,
            status=SyncStatus.COMPLETED,
            records_total=records_total,
            records_synced=records_synced,
            records_failed=records_failed,
            details=details,
        )
        self._metrics.track_sync_run(
            sync_type, SyncStatus.COMPLETED.value, synced=records_synced, failed=records_failed
        )
        log.info(
            "Sync completed",
            records_total=records_total,
            records_synced=records_synced,
            records_failed=records_failed,
        )
        return SyncResult(
            sync_type=sync_type,
            status=SyncStatus.COMPLETED,
            records_total=records_total,
            records_synced=records_synced,
            records_failed=records_failed,
            details=details,
            sync_log_id=sync_log_id,
        )

    async def _reconcile_record(self, adapter: RecordAdapter, record: dict[str, Any]) -> tuple[bool, str]:
        """Mapping first, then natural key, then create. Returns (ok, detail line)."""
        try:
            label = adapter.describe(record)
        except Exception:
            label = str(record.get("id", "<unknown>"))

        try:
            external_id = adapter.external_id(record)
            async with self._db.session() as session:
                now = self._clock()
                metadata = adapter.metadata(record)
                mapping = await self._mappings.find(session, external_id, adapter.external_type)

                if mapping is not None:
                    await adapter.update(session, mapping.internal_id, record)
                    self._mappings.touch(mapping, metadata=metadata, now=now)
                    return True, f"Updated {adapter.label}: {label}"

                key = adapter.natural_key(record)
                internal_id = await adapter.find_by_natural_key(session, key) if key else None
                if internal_id is not None:
                    await adapter.update(session, internal_id, record)
                    action = "Linked existing"
                else:
                    internal_id = await adapter.create(session, record)
                    action = "Created"

                await self._mappings.link(
                    session,
                    external_id=external_id,
                    external_type=adapter.external_type,
                    internal_id=internal_id,
                    internal_type=adapter.internal_type,
                    metadata=metadata,
                    now=now,
                )
                return True, f"{action} {adapter.label}: {label}"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Failed to reconcile record",
                external_type=adapter.external_type,
                record=label,
                error=error,
            )
            return False, f"Failed to sync {adapter.label} {label}: {error}"
