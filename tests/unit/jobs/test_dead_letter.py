from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from rto_jobs.db.models import Notification
from rto_jobs.jobs.notifications import OperatorNotifier
from rto_jobs.jobs.queue import JobQueue
from rto_jobs.jobs.types import JobType, QueueState
from rto_jobs.kernel.errors import NotFoundError

LOCK = timedelta(seconds=30)


async def _fail_until_dead(queue: JobQueue, clock, job_id: str, attempts: int = 3):
    outcomes = []
    for _ in range(attempts):
        job = await queue.dequeue("worker-1", LOCK)
        assert job is not None and job.id == job_id
        outcome = await queue.fail(job.id, "upstream 503", worker_id="worker-1")
        outcomes.append(outcome)
        if outcome.retry_at is not None:
            clock.now_utc = outcome.retry_at
    return outcomes


async def _notifications(db) -> list[Notification]:
    async with db.session() as session:
        return list((await session.execute(select(Notification).order_by(Notification.user_id))).scalars().all())


@pytest.mark.asyncio
async def test_retries_back_off_exponentially(queue, fake_clock):
    handle = await queue.enqueue(JobType.SYNC_PAYROLL, {})
    start = fake_clock.now()

    first, second, third = await _fail_until_dead(queue, fake_clock, handle.id)

    assert first.retry_at == start + timedelta(seconds=2)
    assert second.retry_at == first.retry_at + timedelta(seconds=4)
    assert third.permanent is True


@pytest.mark.asyncio
async def test_exhausted_job_moves_to_dead_letter_and_notifies(db, queue, dead_letters, fake_clock):
    handle = await queue.enqueue(JobType.SYNC_PAYROLL, {"tenant": "acme"})

    outcomes = await _fail_until_dead(queue, fake_clock, handle.id)

    assert outcomes[-1].dead_letter_id == f"dlq-{handle.id}"
    assert await dead_letters.count() == 1
    entry = await dead_letters.get(f"dlq-{handle.id}")
    assert entry.original_id == handle.id
    assert entry.job_type == "syncPayroll"
    assert entry.payload == {"tenant": "acme"}
    assert entry.attempts_made == 3
    assert entry.failed_reason == "upstream 503"

    view = await queue.get_job(handle.id)
    assert view.state is QueueState.FAILED
    assert (await queue.get_metrics()).failed == 1

    notes = await _notifications(db)
    assert [note.user_id for note in notes] == ["admin-1", "admin-2"]
    assert {note.title for note in notes} == {"Job Permanently Failed"}
    assert notes[0].message == (
        'Job "syncPayroll" has failed permanently after 3 attempts. '
        "It has been moved to the dead letter queue for investigation."
    )


@pytest.mark.asyncio
async def test_failed_job_is_not_retried_again(queue, fake_clock):
    handle = await queue.enqueue(JobType.SYNC_PAYROLL, {})
    await _fail_until_dead(queue, fake_clock, handle.id)

    fake_clock.advance(timedelta(days=1))

    assert await queue.dequeue("worker-1", LOCK) is None


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_dead_letter(db, dead_letters, fake_clock):
    class BrokenDirectory:
        async def active_operator_ids(self, role):
            raise RuntimeError("directory offline")

    queue = JobQueue(
        db,
        notifier=OperatorNotifier(db, BrokenDirectory(), clock=fake_clock),
        clock=fake_clock,
    )
    handle = await queue.enqueue(JobType.WEEKLY_DIGEST, {}, max_attempts=1)
    job = await queue.dequeue("worker-1", LOCK)

    outcome = await queue.fail(job.id, "boom")

    assert outcome.permanent is True
    assert await dead_letters.count() == 1
    assert (await queue.get_job(handle.id)).state is QueueState.FAILED


@pytest.mark.asyncio
async def test_dead_letters_listed_newest_first(queue, dead_letters, fake_clock):
    ids = []
    for _ in range(3):
        handle = await queue.enqueue(JobType.PD_REMINDERS, {}, max_attempts=1)
        await queue.fail((await queue.dequeue("worker-1", LOCK)).id, "boom")
        fake_clock.advance(timedelta(minutes=1))
        ids.append(f"dlq-{handle.id}")

    listed = await dead_letters.list(limit=2)

    assert [item.id for item in listed] == [ids[2], ids[1]]
    assert [item.id for item in await dead_letters.list(limit=2, offset=2)] == [ids[0]]


@pytest.mark.asyncio
async def test_replay_creates_fresh_item_and_removes_entry(queue, dead_letters, fake_clock):
    handle = await queue.enqueue(JobType.SYNC_LMS_ENROLLMENTS, {"scope": "all"})
    await _fail_until_dead(queue, fake_clock, handle.id)

    replay = await queue.retry_dead_letter(f"dlq-{handle.id}")

    assert replay.created is True
    assert replay.state is QueueState.WAITING
    assert replay.id.startswith(f"retry-{handle.id}-")
    assert await dead_letters.count() == 0

    view = await queue.get_job(replay.id)
    assert view.attempts_made == 0
    assert view.payload == {"scope": "all"}
    assert view.job_type == "syncLmsEnrollments"

    job = await queue.dequeue("worker-1", LOCK)
    assert job.id == replay.id


@pytest.mark.asyncio
async def test_replay_unknown_entry_raises_not_found(queue):
    with pytest.raises(NotFoundError) as exc_info:
        await queue.retry_dead_letter("dlq-missing")

    assert exc_info.value.code == "jobs.dead_letter_not_found"
    assert exc_info.value.status_code == 404
