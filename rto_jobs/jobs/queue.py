"""Durable priority job queue backed by the `queue_item` table."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from rto_jobs.db.client import Database
from rto_jobs.db.models import DeadLetterItem, QueueControl, QueueItem
from rto_jobs.jobs.backoff import DEFAULT_BASE, DEFAULT_CAP, backoff
from rto_jobs.jobs.notifications import OperatorNotifier
from rto_jobs.jobs.types import (
    ClaimedJob,
    FailOutcome,
    JobHandle,
    JobPriority,
    JobType,
    QueueItemView,
    QueueMetrics,
    QueueState,
)
from rto_jobs.kernel.errors import NotFoundError, ValidationError
from rto_jobs.kernel.ids import dead_letter_id, replay_id
from rto_jobs.kernel.time import Clock, as_timedelta, utc_now
from rto_jobs.monitoring.metrics import Metrics, get_metrics

logger = structlog.get_logger()

STALLED_REASON = "job stalled more than allowable limit"

# Candidates examined per claim round; a lost compare-and-set moves on to the next one.
_CLAIM_CANDIDATES = 20
# A round where every claim was lost reselects, so contention alone never reports an empty queue.
_CLAIM_ROUNDS = 3

# Row in `queue_control` holding the global pause.
_CONTROL_ROW = "default"


def _jsonable(value: Any) -> Any:
    """Handler results may carry datetimes or UUIDs; store them as strings."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def _to_view(item: QueueItem) -> QueueItemView:
    return QueueItemView(
        id=item.id,
        job_type=item.job_type,
        payload=dict(item.payload or {}),
        priority=int(item.priority),
        state=QueueState(item.state),
        attempts_made=int(item.attempts_made or 0),
        max_attempts=int(item.max_attempts or 0),
        run_at=item.run_at,
        created_at=item.created_at,
        processed_at=item.processed_at,
        finished_on=item.finished_on,
        result=item.result,
        failed_reason=item.failed_reason,
    )


class JobQueue:
    """
    Priority queue with at-least-once delivery.

    Ordering: lower `priority` first, then earliest `run_at`, then insertion
    order. Claims are a compare-and-set on `state = 'waiting'` so an item is
    never handed to two workers.
    """

    def __init__(
        self,
        db: Database,
        *,
        notifier: OperatorNotifier | None = None,
        clock: Clock = utc_now,
        default_max_attempts: int = 3,
        backoff_base: timedelta = DEFAULT_BASE,
        backoff_cap: timedelta = DEFAULT_CAP,
        retention_age: timedelta = timedelta(days=90),
        retention_count: int = 1000,
        metrics: Metrics | None = None,
    ) -> None:
        self._db = db
        self._notifier = notifier
        self._clock = clock
        self._default_max_attempts = max(1, int(default_max_attempts))
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._retention_age = retention_age
        self._retention_count = max(0, int(retention_count))
        self._metrics = metrics or get_metrics()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = JobPriority.NORMAL,
        delay: timedelta | int | float | None = None,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        """
        Add an item to the queue.

        A caller-supplied `job_id` that already exists returns the existing
        item's handle (`created=False`) and writes nothing.
        """
        kind = JobType.parse(job_type)
        wait = as_timedelta(delay)
        if wait < timedelta(0):
            raise ValidationError(message="delay must not be negative", meta={"delay": str(delay)})
        attempts_cap = self._default_max_attempts if max_attempts is None else int(max_attempts)
        if attempts_cap < 1:
            raise ValidationError(message="max_attempts must be at least 1", meta={"max_attempts": attempts_cap})

        if job_id:
            existing = await self.get_job(job_id)
            if existing is not None:
                logger.info("Duplicate job id, returning existing item", job_id=job_id, job_type=kind.value)
                return JobHandle(id=existing.id, job_type=existing.job_type, state=existing.state, created=False)

        now = self._clock()
        state = QueueState.DELAYED if wait > timedelta(0) else QueueState.WAITING
        item_id = job_id or str(uuid4())

        try:
            async with self._db.session() as session:
                session.add(
                    QueueItem(
                        id=item_id,
                        job_type=kind.value,
                        payload=_jsonable(payload or {}),
                        priority=int(priority),
                        state=state.value,
                        run_at=now + wait,
                        attempts_made=0,
                        max_attempts=attempts_cap,
                        stalled_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.flush()
        except IntegrityError:
            # Lost an insert race on the same job_id.
            existing = await self.get_job(item_id)
            if existing is None:
                raise
            return JobHandle(id=existing.id, job_type=existing.job_type, state=existing.state, created=False)

        logger.info(
            "Job enqueued",
            job_id=item_id,
            job_type=kind.value,
            priority=int(priority),
            state=state.value,
            delay_seconds=wait.total_seconds(),
        )
        return JobHandle(id=item_id, job_type=kind.value, state=state, created=True)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(self, worker_id: str, lock_duration: timedelta) -> ClaimedJob | None:
        """Claim the next eligible item, or None when empty or paused."""
        now = self._clock()
        async with self._db.session() as session:
            # Write first: the promotion takes the write lock before anything is read.
            await session.execute(
                update(QueueItem)
                .where(QueueItem.state == QueueState.DELAYED.value, QueueItem.run_at <= now)
                .values(state=QueueState.WAITING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if await self._read_paused(session):
                return None

            for _ in range(_CLAIM_ROUNDS):
                candidates = (
                    await session.execute(
                        select(QueueItem.seq)
                        .where(QueueItem.state == QueueState.WAITING.value)
                        .order_by(QueueItem.priority.asc(), QueueItem.run_at.asc(), QueueItem.seq.asc())
                        .limit(_CLAIM_CANDIDATES)
                    )
                ).scalars().all()
                if not candidates:
                    return None

                for seq in candidates:
                    claimed = await session.execute(
                        update(QueueItem)
                        .where(QueueItem.seq == seq, QueueItem.state == QueueState.WAITING.value)
                        .values(
                            state=QueueState.ACTIVE.value,
                            locked_by=worker_id,
                            lock_expires_at=now + lock_duration,
                            processed_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        continue

                    item = await session.scalar(select(QueueItem).where(QueueItem.seq == seq))
                    return ClaimedJob(
                        id=item.id,
                        job_type=JobType.parse(item.job_type),
                        payload=dict(item.payload or {}),
                        priority=int(item.priority),
                        attempts_made=int(item.attempts_made or 0),
                        max_attempts=int(item.max_attempts or 0),
                        locked_by=worker_id,
                        processed_at=now,
                    )

                logger.debug("Lost every claim in round, reselecting", worker_id=worker_id)

        return None

    async def extend_lock(self, job_id: str, worker_id: str, lock_duration: timedelta) -> bool:
        """Heartbeat: push out the lock of an item this worker still owns."""
        now = self._clock()
        async with self._db.session() as session:
            result = await session.execute(
                update(QueueItem)
                .where(
                    QueueItem.id == job_id,
                    QueueItem.state == QueueState.ACTIVE.value,
                    QueueItem.locked_by == worker_id,
                )
                .values(lock_expires_at=now + lock_duration, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def complete(self, job_id: str, result: Any = None, *, worker_id: str | None = None) -> bool:
        """Mark an active item completed. Returns False if the lock was lost."""
        now = self._clock()
        async with self._db.session() as session:
            item = await self._load(session, job_id)
            if not self._owns(item, worker_id, action="complete"):
                return False

            item.state = QueueState.COMPLETED.value
            item.result = _jsonable(result)
            item.finished_on = now
            item.locked_by = None
            item.lock_expires_at = None
            item.updated_at = now
            await session.flush()

            pruned = await self._prune_completed(session, now)

        logger.info("Job completed", job_id=job_id, job_type=item.job_type, pruned=pruned)
        return True

    async def fail(self, job_id: str, reason: str, *, worker_id: str | None = None) -> FailOutcome | None:
        """
        Record a failed attempt.

        Below `max_attempts` the item is delayed by the backoff for the new
        attempt count. At the cap it becomes failed and is mirrored into the
        dead letter store in the same transaction; operators are notified
        afterwards. Returns None if the lock was lost.
        """
        now = self._clock()
        async with self._db.session() as session:
            item = await self._load(session, job_id)
            if not self._owns(item, worker_id, action="fail"):
                return None

            item.attempts_made = int(item.attempts_made or 0) + 1
            item.failed_reason = reason
            item.locked_by = None
            item.lock_expires_at = None
            item.updated_at = now
            job_type = item.job_type

            if item.attempts_made < item.max_attempts:
                retry_at = now + backoff(item.attempts_made, base=self._backoff_base, cap=self._backoff_cap)
                item.state = QueueState.DELAYED.value
                item.run_at = retry_at
                outcome = FailOutcome(
                    job_id=job_id,
                    attempts_made=item.attempts_made,
                    max_attempts=item.max_attempts,
                    retry_at=retry_at,
                )
            else:
                item.state = QueueState.FAILED.value
                item.finished_on = now
                dlq_id = dead_letter_id(item.id)
                dead = await session.get(DeadLetterItem, dlq_id)
                if dead is None:
                    dead = DeadLetterItem(id=dlq_id)
                    session.add(dead)
                dead.original_id = item.id
                dead.job_type = item.job_type
                dead.payload = dict(item.payload or {})
                dead.priority = int(item.priority)
                dead.attempts_made = item.attempts_made
                dead.max_attempts = item.max_attempts
                dead.failed_reason = reason
                dead.original_created_at = item.created_at
                dead.failed_at = now
                outcome = FailOutcome(
                    job_id=job_id,
                    attempts_made=item.attempts_made,
                    max_attempts=item.max_attempts,
                    dead_letter_id=dlq_id,
                )

        if outcome.permanent:
            self._metrics.track_dead_letter(job_type)
            logger.error(
                "Job moved to dead letter queue",
                job_id=job_id,
                job_type=job_type,
                attempts=outcome.attempts_made,
                dead_letter_id=outcome.dead_letter_id,
                reason=reason,
            )
            if self._notifier is not None:
                await self._notifier.notify_permanent_failure(
                    job_type=job_type,
                    job_id=job_id,
                    attempts_made=outcome.attempts_made,
                )
        else:
            self._metrics.track_retry(job_type)
            logger.warning(
                "Job failed, retry scheduled",
                job_id=job_id,
                job_type=job_type,
                attempts=outcome.attempts_made,
                max_attempts=outcome.max_attempts,
                retry_at=outcome.retry_at.isoformat() if outcome.retry_at else None,
                reason=reason,
            )
        return outcome

    async def requeue_stalled(self, max_stalled_count: int) -> int:
        """
        Return active items whose lock expired to the waiting state.

        An item may stall `max_stalled_count` times without consuming an
        attempt; the next stall goes through `fail`. Returns items handled.
        """
        now = self._clock()
        exhausted: list[str] = []
        requeued = 0

        async with self._db.session() as session:
            items = (
                await session.execute(
                    select(QueueItem)
                    .where(
                        QueueItem.state == QueueState.ACTIVE.value,
                        QueueItem.lock_expires_at.is_not(None),
                        QueueItem.lock_expires_at < now,
                    )
                    .order_by(QueueItem.lock_expires_at.asc())
                )
            ).scalars().all()

            for item in items:
                item.stalled_count = int(item.stalled_count or 0) + 1
                item.updated_at = now
                self._metrics.track_stalled(item.job_type)
                if item.stalled_count > max_stalled_count:
                    exhausted.append(item.id)
                    continue
                item.state = QueueState.WAITING.value
                item.run_at = now
                item.locked_by = None
                item.lock_expires_at = None
                requeued += 1
                logger.warning(
                    "Stalled job requeued",
                    job_id=item.id,
                    job_type=item.job_type,
                    stalled_count=item.stalled_count,
                )

        for job_id in exhausted:
            await self.fail(job_id, STALLED_REASON)

        return requeued + len(exhausted)

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    async def pause_all(self) -> None:
        """Stop every worker on this database from claiming; enqueue still works."""
        await self._write_paused(True)
        logger.warning("Queue paused")

    async def resume_all(self) -> None:
        await self._write_paused(False)
        logger.info("Queue resumed")

    async def is_paused(self) -> bool:
        async with self._db.session() as session:
            return await self._read_paused(session)

    async def get_metrics(self) -> QueueMetrics:
        async with self._db.session() as session:
            rows = (
                await session.execute(
                    select(QueueItem.state, func.count()).group_by(QueueItem.state)
                )
            ).all()
            paused = await self._read_paused(session)

        counts = {state.value: 0 for state in QueueState}
        for state, count in rows:
            counts[str(state)] = int(count)
        self._metrics.set_queue_depth(counts)

        return QueueMetrics(
            waiting=counts[QueueState.WAITING.value],
            active=counts[QueueState.ACTIVE.value],
            completed=counts[QueueState.COMPLETED.value],
            failed=counts[QueueState.FAILED.value],
            delayed=counts[QueueState.DELAYED.value],
            paused=paused,
        )

    async def get_history(self, limit: int = 50) -> list[QueueItemView]:
        """Completed and failed items, newest finish first."""
        async with self._db.session() as session:
            items = (
                await session.execute(
                    select(QueueItem)
                    .where(QueueItem.state.in_([QueueState.COMPLETED.value, QueueState.FAILED.value]))
                    .order_by(QueueItem.finished_on.desc(), QueueItem.seq.desc())
                    .limit(max(0, int(limit)))
                )
            ).scalars().all()
        return [_to_view(item) for item in items]

    async def get_job(self, job_id: str) -> QueueItemView | None:
        async with self._db.session() as session:
            item = await session.scalar(select(QueueItem).where(QueueItem.id == job_id))
            return _to_view(item) if item is not None else None

    async def clean_older_than(self, grace_days: int = 90) -> int:
        """Delete completed and failed items finished before the grace period."""
        if grace_days < 0:
            raise ValidationError(message="grace_days must not be negative", meta={"grace_days": grace_days})

        cutoff = self._clock() - timedelta(days=grace_days)
        async with self._db.session() as session:
            result = await session.execute(
                delete(QueueItem)
                .where(
                    QueueItem.state.in_([QueueState.COMPLETED.value, QueueState.FAILED.value]),
                    QueueItem.finished_on < cutoff,
                )
                .execution_options(synchronize_session=False)
            )

        removed = int(result.rowcount or 0)
        logger.info("Old jobs cleaned", grace_days=grace_days, removed=removed)
        return removed

    async def retry_dead_letter(self, dead_letter_item_id: str) -> JobHandle:
        """Re-enqueue a dead letter payload under a fresh id and drop the entry."""
        now = self._clock()
        async with self._db.session() as session:
            dead = await session.get(DeadLetterItem, dead_letter_item_id)
            if dead is None:
                raise NotFoundError(
                    message=f"Dead letter item not found: {dead_letter_item_id}",
                    code="jobs.dead_letter_not_found",
                    meta={"dead_letter_id": dead_letter_item_id},
                )

            new_id = replay_id(dead.id)
            job_type = dead.job_type
            session.add(
                QueueItem(
                    id=new_id,
                    job_type=job_type,
                    payload=dict(dead.payload or {}),
                    priority=int(dead.priority or JobPriority.NORMAL),
                    state=QueueState.WAITING.value,
                    run_at=now,
                    attempts_made=0,
                    max_attempts=int(dead.max_attempts or self._default_max_attempts),
                    stalled_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.delete(dead)

        logger.info(
            "Dead letter job replayed",
            dead_letter_id=dead_letter_item_id,
            job_id=new_id,
            job_type=job_type,
        )
        return JobHandle(id=new_id, job_type=job_type, state=QueueState.WAITING, created=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _read_paused(session) -> bool:
        paused = await session.scalar(
            select(QueueControl.paused).where(QueueControl.name == _CONTROL_ROW)
        )
        return bool(paused)

    async def _write_paused(self, paused: bool) -> None:
        now = self._clock()
        async with self._db.session() as session:
            result = await session.execute(
                update(QueueControl)
                .where(QueueControl.name == _CONTROL_ROW)
                .values(paused=paused, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.add(QueueControl(name=_CONTROL_ROW, paused=paused, updated_at=now))

    @staticmethod
    async def _load(session, job_id: str) -> QueueItem:
        item = await session.scalar(select(QueueItem).where(QueueItem.id == job_id))
        if item is None:
            raise NotFoundError(
                message=f"Job not found: {job_id}",
                code="jobs.not_found",
                meta={"job_id": job_id},
            )
        return item

    @staticmethod
    def _owns(item: QueueItem, worker_id: str | None, *, action: str) -> bool:
        if item.state != QueueState.ACTIVE.value:
            logger.warning("Job is not active", job_id=item.id, state=item.state, action=action)
            return False
        if worker_id is not None and item.locked_by != worker_id:
            logger.warning(
                "Job lock owned by another worker",
                job_id=item.id,
                worker_id=worker_id,
                locked_by=item.locked_by,
                action=action,
            )
            return False
        return True

    async def _prune_completed(self, session, now) -> int:
        removed = 0
        age_result = await session.execute(
            delete(QueueItem)
            .where(
                QueueItem.state == QueueState.COMPLETED.value,
                QueueItem.finished_on < now - self._retention_age,
            )
            .execution_options(synchronize_session=False)
        )
        removed += int(age_result.rowcount or 0)

        overflow = (
            await session.execute(
                select(QueueItem.seq)
                .where(QueueItem.state == QueueState.COMPLETED.value)
                .order_by(QueueItem.finished_on.desc(), QueueItem.seq.desc())
                .offset(self._retention_count)
            )
        ).scalars().all()
        if overflow:
            count_result = await session.execute(
                delete(QueueItem)
                .where(QueueItem.seq.in_(overflow))
                .execution_options(synchronize_session=False)
            )
            removed += int(count_result.rowcount or 0)
        return removed
