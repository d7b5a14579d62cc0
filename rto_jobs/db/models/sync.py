"""Reconciliation bookkeeping: external id mappings and per-run sync logs."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, Integer, Text, UniqueConstraint

from rto_jobs.db.models.base import Base, UTCDateTime
from rto_jobs.kernel.time import utc_now


class MappingRecord(Base):
    __tablename__ = "mapping_record"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    external_id = Column(Text, nullable=False)
    external_type = Column(Text, nullable=False)  # e.g. lms.trainer, payroll.employee
    internal_id = Column(Text, nullable=False, index=True)
    internal_type = Column(Text, nullable=False)
    # `metadata` is reserved on declarative classes.
    provider_metadata = Column("metadata", JSON, nullable=True)
    last_synced_at = Column(UTCDateTime, nullable=False, default=utc_now)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "external_id",
            "external_type",
            name="mapping_record_external_uq",
        ),
    )


class SyncLog(Base):
    __tablename__ = "sync_log"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    sync_type = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False)  # Running, Completed, Failed
    triggered_by = Column(Text, nullable=True)
    records_total = Column(Integer, nullable=False, default=0)
    records_synced = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    started_at = Column(UTCDateTime, nullable=False, default=utc_now)
    completed_at = Column(UTCDateTime, nullable=True)
