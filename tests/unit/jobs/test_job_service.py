from __future__ import annotations

from datetime import timedelta

import pytest

from rto_jobs.jobs.scheduler import JobScheduler
from rto_jobs.jobs.service import JobService
from rto_jobs.jobs.types import JobPriority, JobRecordStatus, JobType, QueueState, Recurrence
from rto_jobs.kernel.errors import NotFoundError, UnknownJobTypeError
from rto_jobs.sync.sync_log import SyncStatus

LOCK = timedelta(seconds=30)


@pytest.fixture
def scheduler(queue, records, fake_clock):
    return JobScheduler(queue, records, timezone="UTC", clock=fake_clock)


@pytest.fixture
def service(queue, scheduler, dead_letters, records, sync_logs):
    return JobService(queue, scheduler, dead_letters, records, sync_logs)


@pytest.mark.asyncio
async def test_enqueue_one_off_job(service, queue):
    handle = await service.enqueue("syncPayroll", {"triggered_by": "user-9"}, priority=JobPriority.HIGH)

    assert handle.created is True
    assert handle.state is QueueState.WAITING
    job = await queue.dequeue("worker-1", LOCK)
    assert job.id == handle.id
    assert job.priority == JobPriority.HIGH
    assert job.payload == {"triggered_by": "user-9"}


@pytest.mark.asyncio
async def test_enqueue_with_recurrence_schedules_instead(service, scheduler, queue):
    handle = await service.enqueue(JobType.WEEKLY_DIGEST, recurrence=Recurrence(pattern="0 7 * * 1"))

    assert handle.id == "recurring:weeklyDigest"
    assert handle.state is QueueState.DELAYED
    assert scheduler.registered()["weeklyDigest"] == Recurrence(pattern="0 7 * * 1", tz="UTC")
    assert (await queue.get_metrics()).waiting == 0


@pytest.mark.asyncio
async def test_enqueue_unknown_type_is_rejected(service):
    with pytest.raises(UnknownJobTypeError):
        await service.enqueue("rebuildSearchIndex")


@pytest.mark.asyncio
async def test_pause_and_resume_job(service, scheduler):
    await service.enqueue(JobType.PD_REMINDERS, recurrence=Recurrence(pattern="0 9 * * *"))

    assert await service.pause_job("pdReminders") is True
    record = await service.get_job_record(JobType.PD_REMINDERS)
    assert record.status is JobRecordStatus.PAUSED

    await service.resume_job("pdReminders")

    assert scheduler.is_registered(JobType.PD_REMINDERS)
    assert (await service.get_job_record("pdReminders")).status is JobRecordStatus.SCHEDULED


@pytest.mark.asyncio
async def test_pause_all_reports_in_metrics(service, queue):
    await service.enqueue(JobType.COMPLAINT_SLA)

    await service.pause_all()
    metrics = await service.get_metrics()

    assert metrics["paused"] is True
    assert metrics["waiting"] == 1
    assert await queue.dequeue("worker-1", LOCK) is None

    await service.resume_all()
    assert (await service.get_metrics())["paused"] is False


@pytest.mark.asyncio
async def test_history_and_job_lookup(service, queue):
    handle = await service.enqueue(JobType.RETRY_FAILED_EMAILS)
    job = await queue.dequeue("worker-1", LOCK)
    await queue.complete(job.id, {"retried": 2, "succeeded": 2, "failed": 0})

    history = await service.get_history()

    assert [item.id for item in history] == [handle.id]
    assert (await service.get_job(handle.id)).result["succeeded"] == 2
    assert await service.get_job("nope") is None


@pytest.mark.asyncio
async def test_dead_letter_listing_and_retry(service, queue, fake_clock):
    handle = await service.enqueue(JobType.SYNC_LMS_STUDENTS, {"page": 1})
    for _ in range(3):
        job = await queue.dequeue("worker-1", LOCK)
        await queue.fail(job.id, "LMS unreachable")
        fake_clock.advance(timedelta(minutes=5))

    listed = await service.list_dead_letter()
    assert [item.original_id for item in listed] == [handle.id]

    replay = await service.retry_from_dead_letter(listed[0].id)

    assert replay.id.startswith(f"retry-{handle.id}-")
    assert await service.list_dead_letter() == []
    with pytest.raises(NotFoundError):
        await service.retry_from_dead_letter(listed[0].id)


@pytest.mark.asyncio
async def test_clean_older_than_delegates(service, queue, fake_clock):
    handle = await service.enqueue(JobType.PD_REMINDERS)
    await queue.complete((await queue.dequeue("worker-1", LOCK)).id, {})
    fake_clock.advance(timedelta(days=10))

    assert await service.clean_older_than(30) == 0
    assert await service.clean_older_than(7) == 1
    assert await service.get_job(handle.id) is None


@pytest.mark.asyncio
async def test_job_records_listed_by_name(service, records):
    await records.mark_running("syncPayroll")
    await records.mark_result("syncPayroll", succeeded=True, result={"recordsSynced": 4})
    await records.set_paused("complaintSLA")

    listed = await service.list_job_records()

    assert [record.name for record in listed] == ["complaintSLA", "syncPayroll"]
    assert listed[1].last_result == '{"recordsSynced": 4}'


@pytest.mark.asyncio
async def test_sync_history_and_last_sync(service, sync_logs, fake_clock):
    first = await sync_logs.start("trainers")
    await sync_logs.finish(first, status=SyncStatus.COMPLETED, records_total=3, records_synced=3, records_failed=0)
    fake_clock.advance(timedelta(minutes=5))
    second = await sync_logs.start("trainers")
    await sync_logs.finish(
        second,
        status=SyncStatus.FAILED,
        records_total=0,
        records_synced=0,
        records_failed=0,
        error_message="Invalid LMS API key",
    )
    await sync_logs.start("students")

    history = await service.get_sync_history("trainers")

    assert [log.id for log in history] == [second, first]
    assert len(await service.get_sync_history()) == 3
    last = await service.get_last_sync("trainers")
    assert last.status == SyncStatus.FAILED
    assert last.error_message == "Invalid LMS API key"
