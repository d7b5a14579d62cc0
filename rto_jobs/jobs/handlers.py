"""
Job handlers.

One async callable per `JobType`, looked up by the worker pool at dispatch.
Handlers delegate to collaborators injected through `HandlerDependencies`;
a job type whose collaborator is missing simply has no handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Sequence

import structlog

from rto_jobs.jobs.notifications import OperatorNotifier
from rto_jobs.jobs.types import ClaimedJob, JobType
from rto_jobs.kernel.errors import HandlerNotFoundError, JobHandlerError, UnknownJobTypeError
from rto_jobs.kernel.time import Clock, utc_now
from rto_jobs.sync.reconciliation import SyncResult
from rto_jobs.sync.service import SyncService
from rto_jobs.sync.sync_log import SyncStatus

logger = structlog.get_logger()

Handler = Callable[[ClaimedJob], Awaitable[dict[str, Any]]]

COMPLAINT_SLA_DAYS = 2


@dataclass(frozen=True)
class SendOutcome:
    sent: int
    failed: int


@dataclass(frozen=True)
class AnalysisOutcome:
    processed: int
    failed: int


@dataclass(frozen=True)
class EmailRetryOutcome:
    retried: int
    succeeded: int
    failed: int


@dataclass(frozen=True)
class ComplaintRef:
    id: str
    source: str


@dataclass(frozen=True)
class ComplianceMetrics:
    total_policies: int
    policies_needing_review: int
    total_standards: int
    mapped_standards: int
    expired_credentials: int
    pd_overdue: int
    open_complaints: int


@dataclass
class HandlerDependencies:
    """Collaborators owned by the rest of the back office."""

    sync: SyncService | None = None
    notifier: OperatorNotifier | None = None
    send_pd_reminders: Callable[[], Awaitable[SendOutcome]] | None = None
    send_credential_expiry_alerts: Callable[[], Awaitable[SendOutcome]] | None = None
    send_policy_review_reminders: Callable[[], Awaitable[SendOutcome]] | None = None
    send_weekly_digests: Callable[[], Awaitable[SendOutcome]] | None = None
    process_pending_feedback: Callable[[], Awaitable[AnalysisOutcome]] | None = None
    retry_failed_emails: Callable[[], Awaitable[EmailRetryOutcome]] | None = None
    check_incomplete_onboarding: Callable[[], Awaitable[None]] | None = None
    find_breaching_complaints: Callable[[datetime], Awaitable[Sequence[ComplaintRef]]] | None = None
    collect_compliance_metrics: Callable[[], Awaitable[ComplianceMetrics]] | None = None


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[JobType, Handler] = {}

    def register(self, job_type: JobType | str, handler: Handler) -> None:
        """Unknown job types are rejected with `UnknownJobTypeError`."""
        kind = JobType.parse(job_type)
        if kind in self._handlers:
            logger.warning("Replacing job handler", job_type=kind.value)
        self._handlers[kind] = handler

    def get(self, job_type: JobType | str) -> Handler:
        kind = JobType.parse(job_type)
        handler = self._handlers.get(kind)
        if handler is None:
            raise HandlerNotFoundError(kind.value)
        return handler

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType.parse(job_type) in self._handlers  # type: ignore[arg-type]
        except UnknownJobTypeError:
            return False

    def registered(self) -> list[JobType]:
        return sorted(self._handlers, key=lambda kind: kind.value)


def _triggered_by(job: ClaimedJob) -> str:
    return str((job.payload or {}).get("triggered_by") or "scheduled")


def _sync_summary(result: SyncResult) -> dict[str, Any]:
    if result.status == SyncStatus.FAILED:
        raise JobHandlerError(
            f"{result.sync_type} sync failed: {result.error_message}",
            meta={"sync_type": result.sync_type, "sync_log_id": result.sync_log_id},
        )
    return {
        "syncType": result.sync_type,
        "recordsTotal": result.records_total,
        "recordsSynced": result.records_synced,
        "recordsFailed": result.records_failed,
    }


def _send_summary(outcome: SendOutcome, what: str) -> dict[str, Any]:
    if outcome.failed > 0:
        raise JobHandlerError(
            f"{what} partially failed: {outcome.failed} out of {outcome.sent + outcome.failed}",
            meta={"sent": outcome.sent, "failed": outcome.failed},
        )
    return {"sent": outcome.sent, "failed": outcome.failed}


def _month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return start, next_month - timedelta(microseconds=1)


def build_compliance_report(metrics: ComplianceMetrics, now: datetime) -> dict[str, Any]:
    start, end = _month_bounds(now)
    coverage = (
        metrics.mapped_standards / metrics.total_standards * 100 if metrics.total_standards else 0.0
    )
    return {
        "period": f"{start.date().isoformat()} to {end.date().isoformat()}",
        "policies": {
            "total": metrics.total_policies,
            "needingReview": metrics.policies_needing_review,
        },
        "standards": {
            "total": metrics.total_standards,
            "mapped": metrics.mapped_standards,
            "coverage": f"{coverage:.1f}%",
        },
        "staff": {
            "expiredCredentials": metrics.expired_credentials,
            "pdOverdue": metrics.pd_overdue,
        },
        "complaints": {"open": metrics.open_complaints},
    }


def build_handler_registry(deps: HandlerDependencies, *, clock: Clock = utc_now) -> HandlerRegistry:
    """Handler table for every job type whose collaborators are configured."""
    registry = HandlerRegistry()
    sync = deps.sync

    if sync is not None and sync.payroll_configured:

        async def sync_payroll(job: ClaimedJob) -> dict[str, Any]:
            return _sync_summary(await sync.sync_payroll_employees(triggered_by=_triggered_by(job)))

        registry.register(JobType.SYNC_PAYROLL, sync_payroll)

    if sync is not None and sync.lms_configured:

        async def sync_trainers(job: ClaimedJob) -> dict[str, Any]:
            return _sync_summary(await sync.sync_trainers(triggered_by=_triggered_by(job)))

        async def sync_students(job: ClaimedJob) -> dict[str, Any]:
            return _sync_summary(await sync.sync_students(triggered_by=_triggered_by(job)))

        async def sync_enrollments(job: ClaimedJob) -> dict[str, Any]:
            return _sync_summary(await sync.sync_enrollments(triggered_by=_triggered_by(job)))

        registry.register(JobType.SYNC_LMS_TRAINERS, sync_trainers)
        registry.register(JobType.SYNC_LMS_STUDENTS, sync_students)
        registry.register(JobType.SYNC_LMS_ENROLLMENTS, sync_enrollments)

    send_jobs = (
        (JobType.PD_REMINDERS, deps.send_pd_reminders, "PD reminders"),
        (JobType.CREDENTIAL_EXPIRY, deps.send_credential_expiry_alerts, "Credential alerts"),
        (JobType.POLICY_REVIEWS, deps.send_policy_review_reminders, "Policy reminders"),
        (JobType.WEEKLY_DIGEST, deps.send_weekly_digests, "Weekly digests"),
    )
    for job_type, send, what in send_jobs:
        if send is None:
            continue

        def make_send_handler(send=send, what=what) -> Handler:
            async def handle(job: ClaimedJob) -> dict[str, Any]:
                return _send_summary(await send(), what)

            return handle

        registry.register(job_type, make_send_handler())

    if deps.process_pending_feedback is not None:
        process_pending_feedback = deps.process_pending_feedback

        async def feedback_analysis(job: ClaimedJob) -> dict[str, Any]:
            outcome = await process_pending_feedback()
            if outcome.failed > 0:
                logger.warning("Feedback items failed to process", job_id=job.id, failed=outcome.failed)
            return {"processed": outcome.processed, "failed": outcome.failed}

        registry.register(JobType.FEEDBACK_AI_ANALYSIS, feedback_analysis)

    if deps.retry_failed_emails is not None:
        retry_failed_emails = deps.retry_failed_emails

        async def email_retry(job: ClaimedJob) -> dict[str, Any]:
            outcome = await retry_failed_emails()
            return {"retried": outcome.retried, "succeeded": outcome.succeeded, "failed": outcome.failed}

        registry.register(JobType.RETRY_FAILED_EMAILS, email_retry)

    if deps.check_incomplete_onboarding is not None:
        check_incomplete_onboarding = deps.check_incomplete_onboarding

        async def onboarding_check(job: ClaimedJob) -> dict[str, Any]:
            await check_incomplete_onboarding()
            return {"checked": True}

        registry.register(JobType.CHECK_INCOMPLETE_ONBOARDING, onboarding_check)

    notifier = deps.notifier

    if deps.find_breaching_complaints is not None and notifier is not None:
        find_breaching_complaints = deps.find_breaching_complaints

        async def complaint_sla(job: ClaimedJob) -> dict[str, Any]:
            cutoff = clock() - timedelta(days=COMPLAINT_SLA_DAYS)
            breaching = list(await find_breaching_complaints(cutoff))
            if breaching:
                await notifier.notify(
                    title="Complaint SLA Breach",
                    messages=[
                        f"Complaint #{complaint.id[:8]} from {complaint.source} has been in "
                        f'"New" status for more than {COMPLAINT_SLA_DAYS} business days.'
                        for complaint in breaching
                    ],
                )
            return {"breachingComplaints": len(breaching)}

        registry.register(JobType.COMPLAINT_SLA, complaint_sla)

    if deps.collect_compliance_metrics is not None and notifier is not None:
        collect_compliance_metrics = deps.collect_compliance_metrics

        async def monthly_report(job: ClaimedJob) -> dict[str, Any]:
            report = build_compliance_report(await collect_compliance_metrics(), clock())
            await notifier.notify(
                title="Monthly Compliance Report",
                messages=[
                    "Monthly compliance report generated: "
                    f"{report['standards']['coverage']} standards coverage, "
                    f"{report['policies']['needingReview']} policies need review, "
                    f"{report['complaints']['open']} open complaints."
                ],
            )
            return report

        registry.register(JobType.MONTHLY_COMPLIANCE_REPORT, monthly_report)

    logger.info(
        "Job handlers registered",
        registered=[kind.value for kind in registry.registered()],
        missing=[kind.value for kind in JobType if kind not in registry],
    )
    return registry
