"""Durable queue, dead-letter, job record and notification models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, Index, Integer, Text

from rto_jobs.db.models.base import Base, UTCDateTime
from rto_jobs.kernel.time import utc_now


class QueueItem(Base):
    __tablename__ = "queue_item"

    # Insertion order; FIFO tie-breaker within a priority level.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Text, nullable=False, unique=True)

    job_type = Column(Text, nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=10)
    state = Column(Text, nullable=False, index=True)  # waiting, active, delayed, completed, failed
    run_at = Column(UTCDateTime, nullable=False)

    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    stalled_count = Column(Integer, nullable=False, default=0)

    locked_by = Column(Text, nullable=True)
    lock_expires_at = Column(UTCDateTime, nullable=True, index=True)

    result = Column(JSON, nullable=True)
    failed_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    processed_at = Column(UTCDateTime, nullable=True)
    finished_on = Column(UTCDateTime, nullable=True, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("queue_item_ready_idx", "state", "priority", "run_at", "seq"),
    )


class DeadLetterItem(Base):
    __tablename__ = "dead_letter_item"

    id = Column(Text, primary_key=True)  # dlq-<original id>
    original_id = Column(Text, nullable=False, index=True)
    job_type = Column(Text, nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=10)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    failed_reason = Column(Text, nullable=True)
    original_created_at = Column(UTCDateTime, nullable=True)
    failed_at = Column(UTCDateTime, nullable=False, default=utc_now)


class JobRecord(Base):
    __tablename__ = "job_record"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    name = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False)  # Scheduled, Running, Completed, Failed, Paused
    schedule = Column(Text, nullable=True)
    timezone = Column(Text, nullable=True)
    last_run_at = Column(UTCDateTime, nullable=True)
    next_run_at = Column(UTCDateTime, nullable=True)
    last_result = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class Notification(Base):
    """In-app notification row read by the operator dashboard."""

    __tablename__ = "notification"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(Text, nullable=False, index=True)
    type = Column(Text, nullable=False, default="in-app")
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)


class QueueControl(Base):
    """Queue-wide switches shared by every process on the database."""

    __tablename__ = "queue_control"

    name = Column(Text, primary_key=True)
    paused = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)
