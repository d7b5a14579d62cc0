"""Sync entry points used by the job handlers and manual triggers."""

from __future__ import annotations

from rto_jobs.kernel.errors import UpstreamError
from rto_jobs.kernel.time import Clock, utc_now
from rto_jobs.sync.adapters import (
    LmsEnrollmentAdapter,
    LmsStudentAdapter,
    LmsTrainerAdapter,
    PayrollEmployeeAdapter,
)
from rto_jobs.sync.lms import LmsClient
from rto_jobs.sync.payroll import PayrollClient
from rto_jobs.sync.reconciliation import ReconciliationEngine, SyncResult

SYNC_PAYROLL_EMPLOYEES = "payroll_employees"
SYNC_TRAINERS = "trainers"
SYNC_STUDENTS = "students"
SYNC_ENROLLMENTS = "enrollments"


class SyncService:
    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        lms: LmsClient | None = None,
        payroll: PayrollClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._engine = engine
        self._lms = lms
        self._payroll = payroll
        self._clock = clock

    @property
    def lms_configured(self) -> bool:
        return self._lms is not None and self._lms.is_configured

    @property
    def payroll_configured(self) -> bool:
        return self._payroll is not None and self._payroll.is_configured

    async def sync_payroll_employees(self, *, triggered_by: str | None = None) -> SyncResult:
        payroll = self._require_payroll()
        return await self._engine.run(
            SYNC_PAYROLL_EMPLOYEES,
            payroll.fetch_employees,
            PayrollEmployeeAdapter(clock=self._clock),
            triggered_by=triggered_by,
        )

    async def sync_trainers(self, *, triggered_by: str | None = None) -> SyncResult:
        lms = self._require_lms()
        return await self._engine.run(
            SYNC_TRAINERS,
            lms.fetch_trainers,
            LmsTrainerAdapter(clock=self._clock),
            triggered_by=triggered_by,
        )

    async def sync_students(self, *, triggered_by: str | None = None) -> SyncResult:
        lms = self._require_lms()
        return await self._engine.run(
            SYNC_STUDENTS,
            lms.fetch_students,
            LmsStudentAdapter(clock=self._clock),
            triggered_by=triggered_by,
        )

    async def sync_enrollments(self, *, triggered_by: str | None = None) -> SyncResult:
        lms = self._require_lms()
        return await self._engine.run(
            SYNC_ENROLLMENTS,
            lms.fetch_enrollments,
            LmsEnrollmentAdapter(clock=self._clock),
            triggered_by=triggered_by,
        )

    async def sync_lms_all(self, *, triggered_by: str | None = None) -> list[SyncResult]:
        """Trainers, then students, then enrollments (which need the students)."""
        return [
            await self.sync_trainers(triggered_by=triggered_by),
            await self.sync_students(triggered_by=triggered_by),
            await self.sync_enrollments(triggered_by=triggered_by),
        ]

    async def aclose(self) -> None:
        if self._lms is not None:
            await self._lms.aclose()
        if self._payroll is not None:
            await self._payroll.aclose()

    def _require_lms(self) -> LmsClient:
        if not self.lms_configured:
            raise UpstreamError(message="Accelerate API is not configured", code="lms.not_configured")
        return self._lms

    def _require_payroll(self) -> PayrollClient:
        if not self.payroll_configured:
            raise UpstreamError(
                message="No active Xero connection found. Please connect to Xero first.",
                code="payroll.not_connected",
            )
        return self._payroll
