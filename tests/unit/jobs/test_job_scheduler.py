from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rto_jobs.jobs.scheduler import DEFAULT_SCHEDULES, JobScheduler, build_trigger
from rto_jobs.jobs.types import JobRecordStatus, JobType, QueueState
from rto_jobs.kernel.errors import ValidationError


@pytest.fixture
def scheduler(queue, records, fake_clock):
    return JobScheduler(queue, records, timezone="Australia/Sydney", clock=fake_clock)


def test_every_job_type_has_a_default_schedule():
    assert set(DEFAULT_SCHEDULES) == set(JobType)


@pytest.mark.parametrize(
    "pattern,tz",
    [
        ("not a cron", "UTC"),
        ("61 * * * *", "UTC"),
        ("0 9 * * *", "Mars/Olympus_Mons"),
    ],
)
def test_build_trigger_rejects_invalid_schedules(pattern, tz):
    with pytest.raises(ValidationError) as exc_info:
        build_trigger(pattern, tz)

    assert exc_info.value.code == "jobs.invalid_schedule"


@pytest.mark.asyncio
async def test_register_records_schedule_and_next_run(scheduler, records):
    next_run = await scheduler.register(JobType.PD_REMINDERS, "0 9 * * *")

    # 09:00 Sydney (AEDT, UTC+11) on 2 January.
    assert next_run == datetime(2026, 1, 1, 22, 0, tzinfo=timezone.utc)
    record = await records.get("pdReminders")
    assert record.status is JobRecordStatus.SCHEDULED
    assert record.schedule == "0 9 * * *"
    assert record.timezone == "Australia/Sydney"
    assert record.next_run_at == next_run
    assert scheduler.is_registered("pdReminders")


@pytest.mark.asyncio
async def test_register_rejects_invalid_pattern_without_side_effects(scheduler, records):
    with pytest.raises(ValidationError):
        await scheduler.register(JobType.PD_REMINDERS, "every morning")

    assert await records.get("pdReminders") is None
    assert not scheduler.is_registered(JobType.PD_REMINDERS)


@pytest.mark.asyncio
async def test_fire_enqueues_once_per_minute_tick(scheduler, queue, fake_clock):
    await scheduler.register(JobType.COMPLAINT_SLA, "0 */4 * * *", "UTC")

    first = await scheduler.fire(JobType.COMPLAINT_SLA)
    fake_clock.advance(timedelta(seconds=20))
    repeat = await scheduler.fire(JobType.COMPLAINT_SLA)

    assert first.id == "complaintSLA:2026-01-01T00:00:00Z"
    assert first.created is True
    assert repeat.id == first.id
    assert repeat.created is False

    fake_clock.advance(timedelta(minutes=1))
    later = await scheduler.fire(JobType.COMPLAINT_SLA)

    assert later.id == "complaintSLA:2026-01-01T00:01:00Z"
    assert (await queue.get_metrics()).waiting == 2


@pytest.mark.asyncio
async def test_fire_refreshes_next_run(scheduler, records, queue):
    await scheduler.register(JobType.RETRY_FAILED_EMAILS, "0 */2 * * *", "UTC")

    handle = await scheduler.fire(JobType.RETRY_FAILED_EMAILS)

    assert handle.state is QueueState.WAITING
    record = await records.get("retryFailedEmails")
    assert record.next_run_at == datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_pause_removes_trigger_and_marks_record(scheduler, records):
    await scheduler.register(JobType.WEEKLY_DIGEST, "0 7 * * 1")

    assert await scheduler.pause(JobType.WEEKLY_DIGEST) is True

    assert not scheduler.is_registered(JobType.WEEKLY_DIGEST)
    assert scheduler.next_fire_time(JobType.WEEKLY_DIGEST) is None
    record = await records.get("weeklyDigest")
    assert record.status is JobRecordStatus.PAUSED
    assert record.next_run_at is None
    assert record.schedule == "0 7 * * 1"

    # Pausing again is harmless.
    assert await scheduler.pause(JobType.WEEKLY_DIGEST) is False


@pytest.mark.asyncio
async def test_pause_unscheduled_job_still_records_paused(scheduler, records):
    assert await scheduler.pause("feedbackAIAnalysis") is False

    record = await records.get("feedbackAIAnalysis")
    assert record.status is JobRecordStatus.PAUSED


@pytest.mark.asyncio
async def test_resume_reuses_recorded_schedule(scheduler, records):
    await scheduler.register(JobType.POLICY_REVIEWS, "15 6 * * *", "UTC")
    await scheduler.pause(JobType.POLICY_REVIEWS)

    next_run = await scheduler.resume(JobType.POLICY_REVIEWS)

    assert next_run == datetime(2026, 1, 1, 6, 15, tzinfo=timezone.utc)
    assert scheduler.registered()["policyReviews"].pattern == "15 6 * * *"
    assert (await records.get("policyReviews")).status is JobRecordStatus.SCHEDULED


@pytest.mark.asyncio
async def test_resume_falls_back_to_default_schedule(scheduler):
    await scheduler.resume(JobType.CHECK_INCOMPLETE_ONBOARDING)

    recurrence = scheduler.registered()["checkIncompleteOnboarding"]
    assert recurrence.pattern == DEFAULT_SCHEDULES[JobType.CHECK_INCOMPLETE_ONBOARDING]
    assert recurrence.tz == "Australia/Sydney"


@pytest.mark.asyncio
async def test_resume_with_explicit_pattern(scheduler):
    await scheduler.pause(JobType.PD_REMINDERS)

    await scheduler.resume(JobType.PD_REMINDERS, "30 10 * * 1-5", "UTC")

    assert scheduler.registered()["pdReminders"].pattern == "30 10 * * 1-5"


@pytest.mark.asyncio
async def test_register_defaults_skips_paused_and_keeps_custom_schedules(scheduler, records):
    await records.set_paused("syncPayroll")
    await records.set_scheduled("pdReminders", schedule="0 6 * * *", timezone="UTC", next_run_at=None)

    registered = await scheduler.register_defaults(
        [JobType.SYNC_PAYROLL, JobType.PD_REMINDERS, JobType.WEEKLY_DIGEST]
    )

    assert registered == [JobType.PD_REMINDERS, JobType.WEEKLY_DIGEST]
    schedules = scheduler.registered()
    assert "syncPayroll" not in schedules
    assert schedules["pdReminders"].pattern == "0 6 * * *"
    assert schedules["pdReminders"].tz == "UTC"
    assert schedules["weeklyDigest"].pattern == "0 7 * * 1"


@pytest.mark.asyncio
async def test_start_and_shutdown(scheduler):
    await scheduler.register_defaults([JobType.PD_REMINDERS])

    await scheduler.start()
    await scheduler.start()
    await scheduler.shutdown()
    await scheduler.shutdown()

    assert scheduler.is_registered(JobType.PD_REMINDERS)
