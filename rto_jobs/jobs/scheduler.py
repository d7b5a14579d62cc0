"""
Recurring job scheduler.

Cron triggers on an APScheduler `AsyncIOScheduler`. A firing only enqueues a
queue item; the worker pool does the work. Missed firings (process down or
paused) are not backfilled.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from rto_jobs.jobs.queue import JobQueue
from rto_jobs.jobs.records import JobRecordStore
from rto_jobs.jobs.types import JobHandle, JobPriority, JobRecordStatus, JobType, Recurrence
from rto_jobs.kernel.errors import ValidationError
from rto_jobs.kernel.time import Clock, isoformat_z, utc_now
from rto_jobs.monitoring.metrics import Metrics, get_metrics

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "Australia/Sydney"

DEFAULT_SCHEDULES: dict[JobType, str] = {
    JobType.SYNC_PAYROLL: "0 2 * * *",
    JobType.SYNC_LMS_TRAINERS: "0 3 * * *",
    JobType.SYNC_LMS_STUDENTS: "15 3 * * *",
    JobType.SYNC_LMS_ENROLLMENTS: "30 3 * * *",
    JobType.FEEDBACK_AI_ANALYSIS: "0 1 * * *",
    JobType.POLICY_REVIEWS: "0 8 * * *",
    JobType.CREDENTIAL_EXPIRY: "30 8 * * *",
    JobType.PD_REMINDERS: "0 9 * * *",
    JobType.RETRY_FAILED_EMAILS: "0 */2 * * *",
    JobType.WEEKLY_DIGEST: "0 7 * * 1",
    JobType.MONTHLY_COMPLIANCE_REPORT: "0 6 1 * *",
    JobType.COMPLAINT_SLA: "0 */4 * * *",
    JobType.CHECK_INCOMPLETE_ONBOARDING: "0 10 * * *",
}


def build_trigger(pattern: str, tz: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(pattern, timezone=tz)
    except (ValueError, LookupError) as exc:
        raise ValidationError(
            message=f"Invalid schedule {pattern!r} ({tz}): {exc}",
            code="jobs.invalid_schedule",
            meta={"pattern": pattern, "timezone": tz},
        ) from exc


class JobScheduler:
    """
    One cron trigger per job type.

    Usage:
        scheduler = JobScheduler(queue, records)
        await scheduler.register_defaults()
        await scheduler.start()
    """

    def __init__(
        self,
        queue: JobQueue,
        records: JobRecordStore,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        clock: Clock = utc_now,
        metrics: Metrics | None = None,
    ) -> None:
        self._queue = queue
        self._records = records
        self._timezone = timezone
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._scheduler = AsyncIOScheduler(timezone=timezone)
        self._triggers: dict[JobType, tuple[Recurrence, CronTrigger]] = {}

    @staticmethod
    def _scheduler_job_id(kind: JobType) -> str:
        return f"recurring:{kind.value}"

    async def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Job scheduler started", schedules=len(self._triggers))

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Job scheduler shutdown")

    async def register(self, job_type: JobType | str, pattern: str, tz: str | None = None) -> datetime | None:
        """Install (or replace) the trigger for a job type. Returns the next fire time."""
        kind = JobType.parse(job_type)
        tz_name = tz or self._timezone
        trigger = build_trigger(pattern, tz_name)

        async def fire_job() -> None:
            try:
                await self.fire(kind)
            except Exception as exc:
                logger.error("Scheduled firing failed", job_type=kind.value, error=str(exc))

        self._scheduler.add_job(
            fire_job,
            trigger=trigger,
            id=self._scheduler_job_id(kind),
            name=f"Enqueue {kind.value}",
            replace_existing=True,
            coalesce=True,  # Skip missed runs
            max_instances=1,  # Don't overlap
        )
        self._triggers[kind] = (Recurrence(pattern=pattern, tz=tz_name), trigger)

        next_run = self.next_fire_time(kind)
        await self._records.set_scheduled(kind.value, schedule=pattern, timezone=tz_name, next_run_at=next_run)
        logger.info(
            "Scheduled recurring job",
            job_type=kind.value,
            pattern=pattern,
            timezone=tz_name,
            next_run_at=isoformat_z(next_run) if next_run else None,
        )
        return next_run

    async def register_defaults(self, job_types: list[JobType] | None = None) -> list[JobType]:
        """Register the default schedule for each job type not paused by an operator."""
        registered: list[JobType] = []
        for kind, pattern in DEFAULT_SCHEDULES.items():
            if job_types is not None and kind not in job_types:
                continue
            record = await self._records.get(kind.value)
            if record is not None and record.status == JobRecordStatus.PAUSED:
                logger.info("Skipping paused recurring job", job_type=kind.value)
                continue
            if record is not None and record.schedule:
                await self.register(kind, record.schedule, record.timezone)
            else:
                await self.register(kind, pattern)
            registered.append(kind)
        return registered

    async def fire(self, job_type: JobType | str) -> JobHandle:
        """Enqueue one run. The id is the minute tick, so a repeated tick dedupes."""
        kind = JobType.parse(job_type)
        now = self._clock()
        tick = now.replace(second=0, microsecond=0)
        handle = await self._queue.enqueue(
            kind,
            {},
            priority=JobPriority.NORMAL,
            job_id=f"{kind.value}:{isoformat_z(tick)}",
        )
        self._metrics.track_scheduler_firing(kind.value)

        next_run = self.next_fire_time(kind, after=now + timedelta(seconds=1))
        await self._records.touch_next_run(kind.value, next_run)
        logger.info("Recurring job fired", job_type=kind.value, job_id=handle.id, created=handle.created)
        return handle

    async def pause(self, job_type: JobType | str) -> bool:
        """Remove the trigger and mark the record Paused. In-flight items run on."""
        kind = JobType.parse(job_type)
        removed = False
        if self._scheduler.get_job(self._scheduler_job_id(kind)):
            self._scheduler.remove_job(self._scheduler_job_id(kind))
            removed = True
        self._triggers.pop(kind, None)
        await self._records.set_paused(kind.value)
        logger.info("Recurring job paused", job_type=kind.value, trigger_removed=removed)
        return removed

    async def resume(self, job_type: JobType | str, pattern: str | None = None, tz: str | None = None) -> datetime | None:
        """
        Re-register a paused job type.

        Without an explicit pattern the last recorded schedule is reused,
        then the default one.
        """
        kind = JobType.parse(job_type)
        if pattern is None:
            record = await self._records.get(kind.value)
            if record is not None and record.schedule:
                pattern = record.schedule
                tz = tz or record.timezone
            else:
                pattern = DEFAULT_SCHEDULES.get(kind)
        if not pattern:
            raise ValidationError(
                message=f"No schedule known for job type: {kind.value}",
                code="jobs.schedule_required",
                meta={"job_type": kind.value},
            )
        return await self.register(kind, pattern, tz)

    def next_fire_time(self, job_type: JobType | str, *, after: datetime | None = None) -> datetime | None:
        kind = JobType.parse(job_type)
        entry = self._triggers.get(kind)
        if entry is None:
            return None
        _, trigger = entry
        return trigger.get_next_fire_time(None, after or self._clock())

    def registered(self) -> dict[str, Recurrence]:
        return {kind.value: recurrence for kind, (recurrence, _) in self._triggers.items()}

    def is_registered(self, job_type: JobType | str) -> bool:
        return JobType.parse(job_type) in self._triggers
