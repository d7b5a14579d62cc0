from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rto_jobs.jobs.records import format_result
from rto_jobs.jobs.types import JobRecordStatus


@pytest.mark.parametrize(
    "result,expected",
    [
        (None, None),
        ("No handler registered", "No handler registered"),
        ({"sent": 3, "failed": 0}, '{"failed": 0, "sent": 3}'),
        ({"at": datetime(2026, 1, 1, tzinfo=timezone.utc)}, '{"at": "2026-01-01 00:00:00+00:00"}'),
    ],
)
def test_format_result(result, expected):
    assert format_result(result) == expected


@pytest.mark.asyncio
async def test_run_lifecycle(records, fake_clock):
    await records.mark_running("policyReviews")
    running = await records.get("policyReviews")
    assert running.status is JobRecordStatus.RUNNING
    assert running.last_run_at == fake_clock.now()

    fake_clock.advance(timedelta(seconds=5))
    await records.mark_result("policyReviews", succeeded=False, result="smtp refused")

    failed = await records.get("policyReviews")
    assert failed.status is JobRecordStatus.FAILED
    assert failed.last_result == "smtp refused"
    assert failed.last_run_at == running.last_run_at


@pytest.mark.asyncio
async def test_paused_record_keeps_status_through_runs(records):
    await records.set_paused("weeklyDigest")

    await records.mark_running("weeklyDigest")
    await records.mark_result("weeklyDigest", succeeded=True, result={"sent": 1, "failed": 0})

    record = await records.get("weeklyDigest")
    assert record.status is JobRecordStatus.PAUSED
    assert record.last_result == '{"failed": 0, "sent": 1}'


@pytest.mark.asyncio
async def test_set_scheduled_clears_pause(records):
    next_run = datetime(2026, 1, 2, 9, tzinfo=timezone.utc)
    await records.set_paused("pdReminders")

    await records.set_scheduled("pdReminders", schedule="0 9 * * *", timezone="UTC", next_run_at=next_run)

    record = await records.get("pdReminders")
    assert record.status is JobRecordStatus.SCHEDULED
    assert (record.schedule, record.timezone, record.next_run_at) == ("0 9 * * *", "UTC", next_run)


@pytest.mark.asyncio
async def test_touch_next_run_ignores_unknown_records(records):
    await records.touch_next_run("complaintSLA", datetime(2026, 1, 1, 4, tzinfo=timezone.utc))

    assert await records.get("complaintSLA") is None
    assert await records.list() == []
