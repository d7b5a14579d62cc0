"""
Process wiring for the jobs worker.

`build_runtime` constructs every component once and hands them out
explicitly; nothing here is a module-level singleton.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from datetime import timedelta

import structlog

from rto_jobs.config import Settings, get_settings
from rto_jobs.db.client import Database
from rto_jobs.jobs.dead_letter import DeadLetterStore
from rto_jobs.jobs.handlers import HandlerDependencies, HandlerRegistry, build_handler_registry
from rto_jobs.jobs.notifications import OperatorDirectory, OperatorNotifier, StaticOperatorDirectory
from rto_jobs.jobs.queue import JobQueue
from rto_jobs.jobs.records import JobRecordStore
from rto_jobs.jobs.scheduler import JobScheduler
from rto_jobs.jobs.service import JobService
from rto_jobs.jobs.worker import WorkerPool
from rto_jobs.kernel.logging_config import configure_logging
from rto_jobs.kernel.time import Clock, utc_now
from rto_jobs.monitoring.prometheus_server import maybe_start_prometheus_http_server
from rto_jobs.sync.lms import LmsClient
from rto_jobs.sync.mapping_store import MappingStore
from rto_jobs.sync.payroll import PayrollClient
from rto_jobs.sync.reconciliation import ReconciliationEngine
from rto_jobs.sync.service import SyncService
from rto_jobs.sync.sync_log import SyncLogStore

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    db: Database
    queue: JobQueue
    registry: HandlerRegistry
    worker_pool: WorkerPool
    scheduler: JobScheduler
    service: JobService
    sync: SyncService

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.sync.aclose()
        await self.db.dispose()


def build_runtime(
    settings: Settings,
    *,
    db: Database | None = None,
    deps: HandlerDependencies | None = None,
    directory: OperatorDirectory | None = None,
    clock: Clock = utc_now,
) -> Runtime:
    """Wire database, stores, queue, handlers, worker pool, scheduler and service."""
    db = db or Database.from_settings(settings)

    notifier = OperatorNotifier(
        db,
        directory or StaticOperatorDirectory(settings.operator_user_ids),
        role=settings.operator_role,
        clock=clock,
    )
    queue = JobQueue(
        db,
        notifier=notifier,
        clock=clock,
        default_max_attempts=settings.job_default_max_attempts,
        backoff_base=timedelta(seconds=settings.job_backoff_base_seconds),
        backoff_cap=timedelta(seconds=settings.job_backoff_max_seconds),
        retention_age=timedelta(days=settings.job_retention_completed_age_days),
        retention_count=settings.job_retention_completed_count,
    )
    records = JobRecordStore(db, clock=clock)
    sync_logs = SyncLogStore(db, clock=clock)

    engine = ReconciliationEngine(
        db,
        MappingStore(db),
        sync_logs,
        clock=clock,
        page_size=settings.sync_page_size,
        max_pages=settings.sync_max_pages,
    )
    sync = SyncService(
        engine,
        lms=LmsClient.from_settings(settings),
        payroll=PayrollClient.from_settings(settings),
        clock=clock,
    )

    deps = deps or HandlerDependencies()
    if deps.sync is None:
        deps.sync = sync
    if deps.notifier is None:
        deps.notifier = notifier
    registry = build_handler_registry(deps, clock=clock)

    worker_pool = WorkerPool(
        queue,
        registry,
        records,
        concurrency=settings.job_worker_concurrency,
        lock_duration=timedelta(seconds=settings.job_worker_lock_duration_seconds),
        max_stalled_count=settings.job_worker_max_stalled_count,
        stalled_interval=timedelta(seconds=settings.job_worker_stalled_interval_seconds),
        poll_interval_seconds=settings.job_worker_poll_interval_seconds,
    )
    scheduler = JobScheduler(queue, records, timezone=settings.scheduler_timezone, clock=clock)
    service = JobService(queue, scheduler, DeadLetterStore(db), records, sync_logs)

    return Runtime(
        settings=settings,
        db=db,
        queue=queue,
        registry=registry,
        worker_pool=worker_pool,
        scheduler=scheduler,
        service=service,
        sync=sync,
    )


async def _run() -> None:
    settings = get_settings()
    configure_logging(settings)
    maybe_start_prometheus_http_server(settings.prometheus_metrics_port, component="jobs_worker")

    runtime = build_runtime(settings)
    if runtime.db.engine.url.get_backend_name() == "sqlite":
        await runtime.db.create_schema()

    if settings.scheduler_enabled:
        await runtime.scheduler.register_defaults(runtime.registry.registered())
        await runtime.scheduler.start()

    worker = runtime.worker_pool
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(worker.shutdown()))

    try:
        await worker.run_forever()
    finally:
        await runtime.close()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
