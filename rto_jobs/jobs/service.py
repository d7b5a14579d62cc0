"""
Job Service

The one object the HTTP layer talks to. Built once per process by
`rto_jobs.runtime.build_runtime`; manual triggers submit and return.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog

from rto_jobs.jobs.dead_letter import DeadLetterStore
from rto_jobs.jobs.queue import JobQueue
from rto_jobs.jobs.records import JobRecordStore
from rto_jobs.jobs.scheduler import JobScheduler
from rto_jobs.jobs.types import (
    DeadLetterView,
    JobHandle,
    JobPriority,
    JobRecordView,
    JobType,
    QueueItemView,
    QueueState,
    Recurrence,
)
from rto_jobs.sync.sync_log import SyncLogStore, SyncLogView

logger = structlog.get_logger()


class JobService:
    def __init__(
        self,
        queue: JobQueue,
        scheduler: JobScheduler,
        dead_letters: DeadLetterStore,
        records: JobRecordStore,
        sync_logs: SyncLogStore,
    ) -> None:
        self._queue = queue
        self._scheduler = scheduler
        self._dead_letters = dead_letters
        self._records = records
        self._sync_logs = sync_logs

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = JobPriority.NORMAL,
        delay: timedelta | int | float | None = None,
        job_id: str | None = None,
        recurrence: Recurrence | None = None,
    ) -> JobHandle:
        """
        Submit a job.

        With `recurrence` the job type is (re)scheduled instead and no queue
        item is created; the handle id names the schedule.
        """
        kind = JobType.parse(job_type)
        if recurrence is not None:
            await self._scheduler.register(kind, recurrence.pattern, recurrence.tz)
            return JobHandle(
                id=f"recurring:{kind.value}",
                job_type=kind.value,
                state=QueueState.DELAYED,
                created=True,
            )
        return await self._queue.enqueue(kind, payload or {}, priority=priority, delay=delay, job_id=job_id)

    async def pause_job(self, job_type: JobType | str) -> bool:
        return await self._scheduler.pause(job_type)

    async def resume_job(self, job_type: JobType | str, pattern: str | None = None, tz: str | None = None) -> datetime | None:
        return await self._scheduler.resume(job_type, pattern, tz)

    async def pause_all(self) -> None:
        await self._queue.pause_all()

    async def resume_all(self) -> None:
        await self._queue.resume_all()

    async def get_metrics(self) -> dict[str, Any]:
        return (await self._queue.get_metrics()).as_dict()

    async def get_history(self, limit: int = 100) -> list[QueueItemView]:
        return await self._queue.get_history(limit)

    async def get_job(self, job_id: str) -> QueueItemView | None:
        return await self._queue.get_job(job_id)

    async def list_dead_letter(self, *, limit: int = 100, offset: int = 0) -> list[DeadLetterView]:
        return await self._dead_letters.list(limit=limit, offset=offset)

    async def retry_from_dead_letter(self, dead_letter_item_id: str) -> JobHandle:
        return await self._queue.retry_dead_letter(dead_letter_item_id)

    async def clean_older_than(self, grace_days: int = 90) -> int:
        return await self._queue.clean_older_than(grace_days)

    async def get_job_record(self, name: JobType | str) -> JobRecordView | None:
        return await self._records.get(JobType.parse(name).value)

    async def list_job_records(self) -> list[JobRecordView]:
        return await self._records.list()

    async def get_sync_history(self, sync_type: str | None = None, limit: int = 10) -> list[SyncLogView]:
        return await self._sync_logs.history(sync_type, limit=limit)

    async def get_last_sync(self, sync_type: str) -> SyncLogView | None:
        return await self._sync_logs.last(sync_type)
