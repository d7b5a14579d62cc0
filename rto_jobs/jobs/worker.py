"""
Worker Pool

Executes queued jobs with bounded concurrency. Each slot is an asyncio task
that claims one item at a time, runs its handler under a lease heartbeat and
reports the outcome back to the queue. A reaper task returns items whose lease
expired (crashed or hung handlers) to the queue.
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable
from uuid import uuid4

import structlog

from rto_jobs.jobs.handlers import HandlerRegistry
from rto_jobs.jobs.queue import JobQueue
from rto_jobs.jobs.records import JobRecordStore
from rto_jobs.jobs.types import ClaimedJob
from rto_jobs.monitoring.metrics import Metrics, get_metrics

logger = structlog.get_logger()


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        records: JobRecordStore,
        *,
        concurrency: int = 5,
        lock_duration: timedelta = timedelta(seconds=30),
        max_stalled_count: int = 2,
        stalled_interval: timedelta = timedelta(seconds=30),
        poll_interval_seconds: float = 1.0,
        worker_id: str | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._queue = queue
        self._registry = registry
        self._records = records
        self._concurrency = max(1, int(concurrency))
        self._lock_duration = lock_duration
        self._max_stalled_count = max(0, int(max_stalled_count))
        self._stalled_interval = stalled_interval
        self._poll_interval = max(0.01, float(poll_interval_seconds))
        self.worker_id = worker_id or f"jobs-worker:{uuid4()}"
        self._metrics = metrics or get_metrics()
        self._shutdown = asyncio.Event()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    async def run_forever(self) -> None:
        """Run slots and the stalled reaper until `shutdown()`.

        In-flight handlers finish before their slot exits.
        """
        logger.info(
            "Worker pool starting",
            worker_id=self.worker_id,
            concurrency=self._concurrency,
            lock_seconds=self._lock_duration.total_seconds(),
            max_stalled_count=self._max_stalled_count,
        )

        reaper_task = asyncio.create_task(self._reap_stalled_jobs())
        slots = [asyncio.create_task(self._run_slot(index)) for index in range(self._concurrency)]
        try:
            await asyncio.gather(*slots)
        finally:
            for task in slots:
                task.cancel()
            reaper_task.cancel()
            await asyncio.gather(reaper_task, *slots, return_exceptions=True)
            logger.info("Worker pool stopped", worker_id=self.worker_id)

    async def shutdown(self) -> None:
        self._shutdown.set()

    async def process_next(self, worker_id: str | None = None) -> bool:
        """Claim and run one item. Returns False when nothing was claimable."""
        owner = worker_id or f"{self.worker_id}:0"
        job = await self._queue.dequeue(owner, self._lock_duration)
        if job is None:
            return False

        # Never crash a slot because of a single job.
        try:
            await self._execute_claimed_job(job)
        except Exception as exc:
            logger.error(
                "Unhandled exception executing job",
                worker_id=owner,
                job_id=job.id,
                job_type=job.job_type.value,
                error=str(exc),
            )
        return True

    async def drain(self, *, max_jobs: int = 1000) -> int:
        """Run claimable items one by one until none are left. Returns items run."""
        processed = 0
        while processed < max_jobs and await self.process_next(f"{self.worker_id}:drain"):
            processed += 1
        return processed

    async def reap_stalled(self) -> int:
        return await self._queue.requeue_stalled(self._max_stalled_count)

    async def _run_slot(self, index: int) -> None:
        owner = f"{self.worker_id}:{index}"
        while not self._shutdown.is_set():
            try:
                processed = await self.process_next(owner)
            except Exception as exc:
                logger.warning("Failed to claim job (will retry)", worker_id=owner, error=str(exc))
                processed = False
            if not processed:
                await self._sleep(self._poll_interval)

    async def _reap_stalled_jobs(self) -> None:
        interval = max(0.01, self._stalled_interval.total_seconds())
        while not self._shutdown.is_set():
            try:
                handled = await self.reap_stalled()
                if handled:
                    logger.warning("Handled stalled jobs", worker_id=self.worker_id, count=handled)
            except Exception as exc:
                logger.warning("Failed to check for stalled jobs", worker_id=self.worker_id, error=str(exc))
            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _execute_claimed_job(self, job: ClaimedJob) -> None:
        job_type = job.job_type.value
        started = time.perf_counter()
        logger.info(
            "Executing job",
            job_id=job.id,
            job_type=job_type,
            worker_id=job.locked_by,
            attempts=job.attempts_made,
            max_attempts=job.max_attempts,
        )
        await self._update_record(self._records.mark_running, job_type)

        lease_task = asyncio.create_task(self._lease_heartbeat(job))
        try:
            handler = self._registry.get(job.job_type)
            result = await handler(job)
        except Exception as exc:
            lease_task.cancel()
            await asyncio.gather(lease_task, return_exceptions=True)
            await self._report_failure(job, exc, time.perf_counter() - started)
            return
        lease_task.cancel()
        await asyncio.gather(lease_task, return_exceptions=True)

        duration = time.perf_counter() - started
        try:
            completed = await self._queue.complete(job.id, result, worker_id=job.locked_by)
        except Exception as exc:
            # The reaper makes the item runnable again once the lock expires.
            logger.error("Failed to mark job completed", job_id=job.id, job_type=job_type, error=str(exc))
            return
        if not completed:
            return

        self._metrics.track_job(job_type, "completed", duration)
        await self._update_record(self._records.mark_result, job_type, succeeded=True, result=result)
        logger.info("Job succeeded", job_id=job.id, job_type=job_type, duration_seconds=duration)

    async def _report_failure(self, job: ClaimedJob, exc: Exception, duration: float) -> None:
        job_type = job.job_type.value
        reason = str(exc) or exc.__class__.__name__
        self._metrics.track_job(job_type, "failed", duration)
        try:
            outcome = await self._queue.fail(job.id, reason, worker_id=job.locked_by)
        except Exception as mark_exc:
            logger.error("Failed to mark job failed", job_id=job.id, job_type=job_type, error=str(mark_exc))
            return
        if outcome is None:
            return

        await self._update_record(self._records.mark_result, job_type, succeeded=False, result=reason)
        logger.warning(
            "Job failed",
            job_id=job.id,
            job_type=job_type,
            attempts=outcome.attempts_made,
            max_attempts=outcome.max_attempts,
            permanent=outcome.permanent,
            error=reason,
        )

    async def _lease_heartbeat(self, job: ClaimedJob) -> None:
        interval = max(0.01, self._lock_duration.total_seconds() / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                ok = await self._queue.extend_lock(job.id, job.locked_by, self._lock_duration)
            except Exception as exc:
                logger.warning("Failed to extend job lock", job_id=job.id, worker_id=job.locked_by, error=str(exc))
                return
            if not ok:
                logger.warning("Job lock lost", job_id=job.id, worker_id=job.locked_by)
                return

    @staticmethod
    async def _update_record(update: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> None:
        # Dashboard bookkeeping never decides a job's outcome.
        try:
            await update(*args, **kwargs)
        except Exception as exc:
            logger.warning("Failed to update job record", job_name=args[0] if args else None, error=str(exc))
