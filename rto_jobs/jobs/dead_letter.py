"""Read side of the dead letter store.

Items land here from `JobQueue.fail` and leave through
`JobQueue.retry_dead_letter`; both need the queue's transaction.
"""

from __future__ import annotations

import structlog
from sqlalchemy import func, select

from rto_jobs.db.client import Database
from rto_jobs.db.models import DeadLetterItem
from rto_jobs.jobs.types import DeadLetterView

logger = structlog.get_logger()


def _to_view(item: DeadLetterItem) -> DeadLetterView:
    return DeadLetterView(
        id=item.id,
        original_id=item.original_id,
        job_type=item.job_type,
        payload=dict(item.payload or {}),
        attempts_made=int(item.attempts_made or 0),
        max_attempts=int(item.max_attempts or 0),
        failed_reason=item.failed_reason,
        failed_at=item.failed_at,
    )


class DeadLetterStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def list(self, *, limit: int = 100, offset: int = 0) -> list[DeadLetterView]:
        """Most recent failures first."""
        async with self._db.session() as session:
            items = (
                await session.execute(
                    select(DeadLetterItem)
                    .order_by(DeadLetterItem.failed_at.desc(), DeadLetterItem.id.asc())
                    .offset(max(0, int(offset)))
                    .limit(max(0, int(limit)))
                )
            ).scalars().all()
        return [_to_view(item) for item in items]

    async def get(self, dead_letter_item_id: str) -> DeadLetterView | None:
        async with self._db.session() as session:
            item = await session.get(DeadLetterItem, dead_letter_item_id)
            return _to_view(item) if item is not None else None

    async def count(self) -> int:
        async with self._db.session() as session:
            return int(await session.scalar(select(func.count()).select_from(DeadLetterItem)) or 0)
