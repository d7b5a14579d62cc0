"""Database models."""

from rto_jobs.db.models.base import Base, UTCDateTime
from rto_jobs.db.models.jobs import (
    DeadLetterItem,
    JobRecord,
    Notification,
    QueueControl,
    QueueItem,
)
from rto_jobs.db.models.people import (
    Enrollment,
    StaffMember,
    Student,
)
from rto_jobs.db.models.sync import (
    MappingRecord,
    SyncLog,
)

__all__ = [
    "Base",
    "UTCDateTime",
    "QueueItem",
    "QueueControl",
    "DeadLetterItem",
    "JobRecord",
    "Notification",
    "MappingRecord",
    "SyncLog",
    "StaffMember",
    "Student",
    "Enrollment",
]
