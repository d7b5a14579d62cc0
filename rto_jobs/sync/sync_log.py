"""One row per reconciliation run: created Running, finished exactly once."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from rto_jobs.db.client import Database
from rto_jobs.db.models import SyncLog
from rto_jobs.kernel.errors import ConflictError, NotFoundError
from rto_jobs.kernel.time import Clock, utc_now

logger = structlog.get_logger()


class SyncStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class SyncLogView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sync_type: str
    status: SyncStatus
    triggered_by: str | None = None
    records_total: int = 0
    records_synced: int = 0
    records_failed: int = 0
    error_message: str | None = None
    details: list[str] | None = None
    started_at: datetime
    completed_at: datetime | None = None


class SyncLogStore:
    def __init__(self, db: Database, *, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    async def start(self, sync_type: str, *, triggered_by: str | None = None) -> str:
        now = self._clock()
        async with self._db.session() as session:
            log = SyncLog(
                sync_type=sync_type,
                status=SyncStatus.RUNNING.value,
                triggered_by=triggered_by,
                records_total=0,
                records_synced=0,
                records_failed=0,
                started_at=now,
            )
            session.add(log)
            await session.flush()
            return log.id

    async def finish(
        self,
        sync_log_id: str,
        *,
        status: SyncStatus,
        records_total: int,
        records_synced: int,
        records_failed: int,
        error_message: str | None = None,
        details: list[str] | None = None,
    ) -> None:
        """Close a Running log. A finished log is immutable."""
        if status == SyncStatus.RUNNING:
            raise ValueError("A sync log can only be finished as Completed or Failed")

        async with self._db.session() as session:
            log = await session.get(SyncLog, sync_log_id)
            if log is None:
                raise NotFoundError(
                    message=f"Sync log not found: {sync_log_id}",
                    code="sync.log_not_found",
                    meta={"sync_log_id": sync_log_id},
                )
            if log.status != SyncStatus.RUNNING.value:
                raise ConflictError(
                    message=f"Sync log already finished: {sync_log_id}",
                    code="sync.log_finished",
                    meta={"sync_log_id": sync_log_id, "status": log.status},
                )
            log.status = status.value
            log.records_total = records_total
            log.records_synced = records_synced
            log.records_failed = records_failed
            log.error_message = error_message
            log.details = list(details or [])
            log.completed_at = self._clock()

    async def history(self, sync_type: str | None = None, *, limit: int = 10) -> list[SyncLogView]:
        stmt = select(SyncLog).order_by(SyncLog.started_at.desc()).limit(max(0, int(limit)))
        if sync_type is not None:
            stmt = stmt.where(SyncLog.sync_type == sync_type)
        async with self._db.session() as session:
            logs = (await session.execute(stmt)).scalars().all()
        return [SyncLogView.model_validate(log) for log in logs]

    async def last(self, sync_type: str) -> SyncLogView | None:
        logs = await self.history(sync_type, limit=1)
        return logs[0] if logs else None
