"""External-id to internal-id links written by reconciliation runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rto_jobs.db.client import Database
from rto_jobs.db.models import MappingRecord


class MappingStore:
    """
    `(external_id, external_type)` is unique; rows are never deleted by sync.

    The session-scoped methods run inside the caller's per-record transaction.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    async def find(session: AsyncSession, external_id: str, external_type: str) -> MappingRecord | None:
        return await session.scalar(
            select(MappingRecord).where(
                MappingRecord.external_id == external_id,
                MappingRecord.external_type == external_type,
            )
        )

    @staticmethod
    async def link(
        session: AsyncSession,
        *,
        external_id: str,
        external_type: str,
        internal_id: str,
        internal_type: str,
        metadata: dict[str, Any] | None,
        now: datetime,
    ) -> MappingRecord:
        mapping = MappingRecord(
            external_id=external_id,
            external_type=external_type,
            internal_id=internal_id,
            internal_type=internal_type,
            provider_metadata=metadata,
            last_synced_at=now,
            created_at=now,
        )
        session.add(mapping)
        await session.flush()
        return mapping

    @staticmethod
    def touch(mapping: MappingRecord, *, metadata: dict[str, Any] | None, now: datetime) -> None:
        mapping.last_synced_at = now
        if metadata is not None:
            mapping.provider_metadata = metadata

    async def get_internal_id(self, external_id: str, external_type: str) -> str | None:
        async with self._db.session() as session:
            mapping = await self.find(session, external_id, external_type)
            return mapping.internal_id if mapping is not None else None

    async def count(self, external_type: str | None = None) -> int:
        stmt = select(func.count()).select_from(MappingRecord)
        if external_type is not None:
            stmt = stmt.where(MappingRecord.external_type == external_type)
        async with self._db.session() as session:
            return int(await session.scalar(stmt) or 0)
