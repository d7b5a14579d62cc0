from __future__ import annotations

import pytest
from sqlalchemy import func, select

from rto_jobs.db.models import StaffMember
from rto_jobs.sync.adapters import LMS_TRAINER, LmsTrainerAdapter
from rto_jobs.sync.reconciliation import ReconciliationEngine, UpstreamPage
from rto_jobs.sync.sync_log import SyncStatus
from tests.support.upstream import FakeUpstream, trainer


async def _staff_count(db) -> int:
    async with db.session() as session:
        return int(await session.scalar(select(func.count()).select_from(StaffMember)))


@pytest.mark.parametrize(
    "page,expected",
    [
        (UpstreamPage(items=[], page=1, per_page=10, total_pages=3), False),
        (UpstreamPage(items=[{}], page=1, per_page=10, total_pages=3), True),
        (UpstreamPage(items=[{}], page=3, per_page=10, total_pages=3), False),
        (UpstreamPage(items=[{}] * 10, page=1, per_page=10), True),
        (UpstreamPage(items=[{}] * 9, page=1, per_page=10), False),
    ],
)
def test_upstream_page_has_more(page, expected):
    assert page.has_more() is expected


@pytest.mark.asyncio
async def test_rerunning_a_sync_updates_instead_of_duplicating(engine, db, mappings, fake_clock):
    upstream = FakeUpstream([trainer(i) for i in range(50)])
    adapter = LmsTrainerAdapter(clock=fake_clock)

    first = await engine.run("trainers", upstream.fetch, adapter)
    second = await engine.run("trainers", upstream.fetch, adapter)

    for result in (first, second):
        assert result.status is SyncStatus.COMPLETED
        assert result.records_total == 50
        assert result.records_synced == 50
        assert result.records_failed == 0
    assert first.details[0] == "Created trainer: trainer0@example.edu.au"
    assert second.details[0] == "Updated trainer: trainer0@example.edu.au"
    assert await mappings.count(LMS_TRAINER) == 50
    assert await _staff_count(db) == 50


@pytest.mark.asyncio
async def test_bad_record_is_counted_and_run_continues(engine, sync_logs, fake_clock):
    records = [trainer(i) for i in range(10)]
    records[4] = trainer(4, firstName=None)
    upstream = FakeUpstream(records)

    result = await engine.run("trainers", upstream.fetch, LmsTrainerAdapter(clock=fake_clock), triggered_by="user-1")

    assert result.status is SyncStatus.COMPLETED
    assert result.records_synced == 9
    assert result.records_failed == 1
    assert "Failed to sync trainer trainer4@example.edu.au: Missing required field: firstName" in result.details

    log = await sync_logs.last("trainers")
    assert log.id == result.sync_log_id
    assert log.status is SyncStatus.COMPLETED
    assert log.triggered_by == "user-1"
    assert (log.records_total, log.records_synced, log.records_failed) == (10, 9, 1)
    assert log.completed_at is not None
    assert len(log.details) == 10


@pytest.mark.asyncio
async def test_failed_record_leaves_no_partial_writes(engine, db, mappings, fake_clock):
    upstream = FakeUpstream([trainer(1, email=None)])

    result = await engine.run("trainers", upstream.fetch, LmsTrainerAdapter(clock=fake_clock))

    assert result.records_failed == 1
    assert await mappings.count() == 0
    assert await _staff_count(db) == 0


@pytest.mark.asyncio
async def test_page_fetch_failure_fails_the_run(engine, sync_logs, mappings, fake_clock):
    upstream = FakeUpstream([trainer(i) for i in range(150)], fail_on_page=2)

    result = await engine.run("trainers", upstream.fetch, LmsTrainerAdapter(clock=fake_clock))

    assert result.status is SyncStatus.FAILED
    assert result.error_message == "upstream unavailable on page 2"
    assert result.records_synced == 100
    # Records reconciled before the failure stay committed.
    assert await mappings.count(LMS_TRAINER) == 100

    log = await sync_logs.last("trainers")
    assert log.status is SyncStatus.FAILED
    assert log.error_message == "upstream unavailable on page 2"


@pytest.mark.asyncio
async def test_short_page_ends_run_when_total_pages_unknown(engine, fake_clock):
    upstream = FakeUpstream([trainer(i) for i in range(100)], report_total_pages=False)

    result = await engine.run("trainers", upstream.fetch, LmsTrainerAdapter(clock=fake_clock))

    assert upstream.requested_pages == [1, 2]
    assert result.records_total == 100
    assert result.records_synced == 100


@pytest.mark.asyncio
async def test_page_limit_stops_run(db, mappings, sync_logs, fake_clock):
    engine = ReconciliationEngine(db, mappings, sync_logs, clock=fake_clock, page_size=2, max_pages=2)
    upstream = FakeUpstream([trainer(i) for i in range(10)])

    result = await engine.run("trainers", upstream.fetch, LmsTrainerAdapter(clock=fake_clock))

    assert upstream.requested_pages == [1, 2]
    assert result.status is SyncStatus.COMPLETED
    assert result.records_synced == 4
    assert result.records_total == 10
    assert result.details[-1] == "Stopped after 2 pages (page limit reached)"


@pytest.mark.asyncio
async def test_existing_staff_member_is_linked_by_email(engine, db, mappings, fake_clock):
    async with db.session() as session:
        member = StaffMember(
            email="jo.bloggs@example.edu.au",
            name="Jo Bloggs",
            department="Support",
            status="Active",
            created_at=fake_clock.now(),
            updated_at=fake_clock.now(),
        )
        session.add(member)
        await session.flush()
        member_id = member.id

    upstream = FakeUpstream([trainer(7, firstName="Jo", lastName="Bloggs", email="Jo.Bloggs@Example.edu.au")])

    result = await engine.run("trainers", upstream.fetch, LmsTrainerAdapter(clock=fake_clock))

    assert result.details == ["Linked existing trainer: Jo.Bloggs@Example.edu.au"]
    assert await mappings.get_internal_id("tr-7", LMS_TRAINER) == member_id
    assert await _staff_count(db) == 1
    async with db.session() as session:
        linked = await session.get(StaffMember, member_id)
        assert linked.department == "Training"
