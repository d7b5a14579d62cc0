"""Job kinds, priorities, states and the value objects the queue hands out."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from rto_jobs.kernel.errors import UnknownJobTypeError


class JobType(str, Enum):
    """Closed set of job kinds. Adding one means registering a handler."""

    SYNC_PAYROLL = "syncPayroll"
    SYNC_LMS_TRAINERS = "syncLmsTrainers"
    SYNC_LMS_STUDENTS = "syncLmsStudents"
    SYNC_LMS_ENROLLMENTS = "syncLmsEnrollments"
    PD_REMINDERS = "pdReminders"
    CREDENTIAL_EXPIRY = "credentialExpiry"
    POLICY_REVIEWS = "policyReviews"
    COMPLAINT_SLA = "complaintSLA"
    WEEKLY_DIGEST = "weeklyDigest"
    MONTHLY_COMPLIANCE_REPORT = "monthlyComplianceReport"
    FEEDBACK_AI_ANALYSIS = "feedbackAIAnalysis"
    RETRY_FAILED_EMAILS = "retryFailedEmails"
    CHECK_INCOMPLETE_ONBOARDING = "checkIncompleteOnboarding"

    @classmethod
    def parse(cls, value: "JobType | str") -> "JobType":
        if isinstance(value, JobType):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise UnknownJobTypeError(str(value)) from None


class JobPriority(IntEnum):
    """Lower value wins."""

    CRITICAL = 1
    HIGH = 5
    NORMAL = 10
    LOW = 15


class QueueState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class JobRecordStatus(str, Enum):
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    PAUSED = "Paused"


@dataclass(frozen=True)
class Recurrence:
    pattern: str
    tz: str | None = None


@dataclass(frozen=True)
class JobHandle:
    id: str
    job_type: str
    state: QueueState
    created: bool


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: JobType
    payload: dict[str, Any]
    priority: int
    attempts_made: int
    max_attempts: int
    locked_by: str
    processed_at: datetime


@dataclass(frozen=True)
class QueueItemView:
    id: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    state: QueueState
    attempts_made: int
    max_attempts: int
    run_at: datetime
    created_at: datetime
    processed_at: datetime | None = None
    finished_on: datetime | None = None
    result: Any = None
    failed_reason: str | None = None


@dataclass(frozen=True)
class DeadLetterView:
    id: str
    original_id: str
    job_type: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    failed_reason: str | None
    failed_at: datetime


@dataclass(frozen=True)
class FailOutcome:
    job_id: str
    attempts_made: int
    max_attempts: int
    retry_at: datetime | None = None
    dead_letter_id: str | None = None

    @property
    def permanent(self) -> bool:
        return self.dead_letter_id is not None


@dataclass
class QueueMetrics:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused,
        }


@dataclass(frozen=True)
class JobRecordView:
    name: str
    status: JobRecordStatus
    schedule: str | None
    timezone: str | None
    last_run_at: datetime | None
    next_run_at: datetime | None
    last_result: str | None
