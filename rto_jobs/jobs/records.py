"""Per-job-type status rows shown on the operator dashboard."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select

from rto_jobs.db.client import Database
from rto_jobs.db.models import JobRecord
from rto_jobs.jobs.types import JobRecordStatus, JobRecordView
from rto_jobs.kernel.time import Clock, utc_now

logger = structlog.get_logger()


def format_result(result: Any) -> str | None:
    """`last_result` is text: strings verbatim, everything else as JSON."""
    if result is None:
        return None
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str, sort_keys=True)


def _to_view(record: JobRecord) -> JobRecordView:
    return JobRecordView(
        name=record.name,
        status=JobRecordStatus(record.status),
        schedule=record.schedule,
        timezone=record.timezone,
        last_run_at=record.last_run_at,
        next_run_at=record.next_run_at,
        last_result=record.last_result,
    )


class JobRecordStore:
    """
    Upserts keyed by job name.

    A record is created the first time a job runs or is paused/resumed and
    is never deleted. `Paused` survives runs that were already in flight.
    """

    def __init__(self, db: Database, *, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    async def get(self, name: str) -> JobRecordView | None:
        async with self._db.session() as session:
            record = await session.scalar(select(JobRecord).where(JobRecord.name == name))
            return _to_view(record) if record is not None else None

    async def list(self) -> list[JobRecordView]:
        async with self._db.session() as session:
            records = (await session.execute(select(JobRecord).order_by(JobRecord.name.asc()))).scalars().all()
        return [_to_view(record) for record in records]

    async def mark_running(self, name: str) -> None:
        now = self._clock()
        async with self._db.session() as session:
            record = await self._get_or_create(session, name, JobRecordStatus.RUNNING, now)
            if record.status != JobRecordStatus.PAUSED.value:
                record.status = JobRecordStatus.RUNNING.value
            record.last_run_at = now
            record.updated_at = now

    async def mark_result(self, name: str, *, succeeded: bool, result: Any = None) -> None:
        now = self._clock()
        status = JobRecordStatus.COMPLETED if succeeded else JobRecordStatus.FAILED
        async with self._db.session() as session:
            record = await self._get_or_create(session, name, status, now)
            if record.status != JobRecordStatus.PAUSED.value:
                record.status = status.value
            record.last_result = format_result(result)
            record.updated_at = now

    async def set_paused(self, name: str) -> None:
        now = self._clock()
        async with self._db.session() as session:
            record = await self._get_or_create(session, name, JobRecordStatus.PAUSED, now)
            record.status = JobRecordStatus.PAUSED.value
            record.next_run_at = None
            record.updated_at = now
        logger.info("Job record paused", job_name=name)

    async def set_scheduled(
        self,
        name: str,
        *,
        schedule: str,
        timezone: str | None,
        next_run_at: datetime | None,
    ) -> None:
        now = self._clock()
        async with self._db.session() as session:
            record = await self._get_or_create(session, name, JobRecordStatus.SCHEDULED, now)
            record.status = JobRecordStatus.SCHEDULED.value
            record.schedule = schedule
            record.timezone = timezone
            record.next_run_at = next_run_at
            record.updated_at = now

    async def touch_next_run(self, name: str, next_run_at: datetime | None) -> None:
        """Refresh `next_run_at` after a firing without touching the status."""
        now = self._clock()
        async with self._db.session() as session:
            record = await session.scalar(select(JobRecord).where(JobRecord.name == name))
            if record is None:
                return
            record.next_run_at = next_run_at
            record.updated_at = now

    @staticmethod
    async def _get_or_create(session, name: str, status: JobRecordStatus, now: datetime) -> JobRecord:
        record = await session.scalar(select(JobRecord).where(JobRecord.name == name))
        if record is None:
            record = JobRecord(name=name, status=status.value, created_at=now, updated_at=now)
            session.add(record)
        return record
