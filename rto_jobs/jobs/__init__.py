"""
Background Jobs

Durable priority queue, worker pool, recurring scheduler and dead letter
handling for the compliance back office.
"""

from rto_jobs.jobs.handlers import HandlerDependencies, HandlerRegistry, build_handler_registry
from rto_jobs.jobs.queue import JobQueue
from rto_jobs.jobs.scheduler import DEFAULT_SCHEDULES, JobScheduler
from rto_jobs.jobs.service import JobService
from rto_jobs.jobs.types import (
    JobHandle,
    JobPriority,
    JobRecordStatus,
    JobType,
    QueueState,
    Recurrence,
)
from rto_jobs.jobs.worker import WorkerPool

__all__ = [
    # Queue
    "JobQueue",
    "JobHandle",
    "JobPriority",
    "JobType",
    "QueueState",
    # Execution
    "HandlerDependencies",
    "HandlerRegistry",
    "build_handler_registry",
    "WorkerPool",
    # Scheduling
    "DEFAULT_SCHEDULES",
    "JobScheduler",
    "JobRecordStatus",
    "Recurrence",
    # Facade
    "JobService",
]
