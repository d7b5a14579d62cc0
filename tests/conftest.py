"""
Test Configuration and Fixtures

Every test that touches storage gets its own SQLite file database, so queue
semantics run for real without a Postgres server.
"""

import os
from datetime import timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Set test environment variables before importing settings.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./rto_jobs_test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SCHEDULER_ENABLED", "false")


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (may use real services)")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers so we can run:
    - pytest -m unit
    - pytest -m integration

    Convention:
    - tests/integration/** => integration
    - everything else      => unit
    """
    for item in items:
        path = str(getattr(item, "fspath", ""))
        if item.get_closest_marker("integration") or item.get_closest_marker("unit"):
            continue
        if "/tests/integration/" in path:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# CORE FIXTURES
# =============================================================================


@pytest.fixture
def fake_clock():
    """Deterministic clock; pass it wherever a component takes `clock=`."""
    from tests.support.clock import FakeClock

    return FakeClock.fixed()


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator:
    """Fresh SQLite database with the full schema."""
    from rto_jobs.db.client import Database

    database = Database.from_url(f"sqlite+aiosqlite:///{tmp_path / 'rto_jobs.db'}")
    await database.create_schema()
    try:
        yield database
    finally:
        await database.dispose()


@pytest.fixture
def operator_ids():
    return ["admin-1", "admin-2"]


@pytest.fixture
def notifier(db, fake_clock, operator_ids):
    from rto_jobs.jobs.notifications import OperatorNotifier, StaticOperatorDirectory

    return OperatorNotifier(db, StaticOperatorDirectory(operator_ids), clock=fake_clock)


@pytest.fixture
def queue(db, notifier, fake_clock):
    from rto_jobs.jobs.queue import JobQueue

    return JobQueue(
        db,
        notifier=notifier,
        clock=fake_clock,
        default_max_attempts=3,
        backoff_base=timedelta(seconds=1),
        backoff_cap=timedelta(seconds=300),
    )


@pytest.fixture
def records(db, fake_clock):
    from rto_jobs.jobs.records import JobRecordStore

    return JobRecordStore(db, clock=fake_clock)


@pytest.fixture
def dead_letters(db):
    from rto_jobs.jobs.dead_letter import DeadLetterStore

    return DeadLetterStore(db)


@pytest.fixture
def sync_logs(db, fake_clock):
    from rto_jobs.sync.sync_log import SyncLogStore

    return SyncLogStore(db, clock=fake_clock)


@pytest.fixture
def mappings(db):
    from rto_jobs.sync.mapping_store import MappingStore

    return MappingStore(db)


@pytest.fixture
def engine(db, mappings, sync_logs, fake_clock):
    from rto_jobs.sync.reconciliation import ReconciliationEngine

    return ReconciliationEngine(db, mappings, sync_logs, clock=fake_clock, page_size=100, max_pages=50)
