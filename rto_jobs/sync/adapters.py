"""Record adapters: how each upstream record type lands in local tables."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rto_jobs.db.models import Enrollment, StaffMember, Student
from rto_jobs.kernel.errors import RecordSyncError
from rto_jobs.kernel.time import Clock, parse_iso8601, utc_now
from rto_jobs.sync.mapping_store import MappingStore

PAYROLL_EMPLOYEE = "payroll.employee"
LMS_TRAINER = "lms.trainer"
LMS_STUDENT = "lms.student"
LMS_ENROLLMENT = "lms.enrollment"
LMS_COURSE = "lms.course"

_DEPARTMENT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("trainer", "instructor"), "Training"),
    (("admin", "manager"), "Admin"),
    (("director", "executive"), "Management"),
)


def map_department(job_title: str | None) -> str:
    """Payroll job title to department; first matching rule wins."""
    if not job_title:
        return "Support"
    title = job_title.lower()
    for needles, department in _DEPARTMENT_RULES:
        if any(needle in title for needle in needles):
            return department
    return "Support"


def _require(record: dict[str, Any], key: str) -> Any:
    value = record.get(key)
    if value in (None, ""):
        raise RecordSyncError(f"Missing required field: {key}", meta={"field": key})
    return value


def _optional_datetime(value: Any):
    if not value:
        return None
    return parse_iso8601(str(value))


async def _load(session: AsyncSession, model, internal_id: str):
    row = await session.get(model, internal_id)
    if row is None:
        raise RecordSyncError(
            f"Mapped {model.__tablename__} {internal_id} no longer exists",
            meta={"internal_id": internal_id},
        )
    return row


class _StaffAdapter:
    """Shared staff_member writes for payroll employees and LMS trainers."""

    internal_type = "StaffMember"

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock

    def natural_key(self, record: dict[str, Any]) -> str | None:
        email = self._email(record)
        return email.lower() if email else None

    async def find_by_natural_key(self, session: AsyncSession, key: str) -> str | None:
        return await session.scalar(select(StaffMember.id).where(StaffMember.email == key))

    def _email(self, record: dict[str, Any]) -> str | None:
        raise NotImplementedError

    def _fields(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def update(self, session: AsyncSession, internal_id: str, record: dict[str, Any]) -> None:
        member = await _load(session, StaffMember, internal_id)
        for column, value in self._fields(record).items():
            setattr(member, column, value)
        member.updated_at = self._clock()

    async def create(self, session: AsyncSession, record: dict[str, Any]) -> str:
        now = self._clock()
        member = StaffMember(created_at=now, updated_at=now, **self._fields(record))
        session.add(member)
        await session.flush()
        return member.id


class PayrollEmployeeAdapter(_StaffAdapter):
    external_type = PAYROLL_EMPLOYEE
    label = "employee"

    def external_id(self, record: dict[str, Any]) -> str:
        return str(_require(record, "EmployeeID"))

    def describe(self, record: dict[str, Any]) -> str:
        return self._name(record) or str(record.get("EmployeeID", "<unknown>"))

    def metadata(self, record: dict[str, Any]) -> dict[str, Any] | None:
        title = record.get("JobTitle")
        return {"job_title": title} if title else None

    def _name(self, record: dict[str, Any]) -> str:
        return f"{record.get('FirstName') or ''} {record.get('LastName') or ''}".strip()

    def _email(self, record: dict[str, Any]) -> str | None:
        email = record.get("Email")
        if email:
            return str(email)
        first = str(record.get("FirstName") or "").lower()
        last = str(record.get("LastName") or "").lower()
        if not first and not last:
            return None
        # Placeholder until the employee's real address is known.
        return f"{first}.{last}@example.com"

    def _fields(self, record: dict[str, Any]) -> dict[str, Any]:
        email = self._email(record)
        if not email:
            raise RecordSyncError("Employee has no email or name", meta={"employee_id": record.get("EmployeeID")})
        return {
            "name": self._name(record),
            "email": email.lower(),
            "department": map_department(record.get("JobTitle")),
            "payroll_employee_id": self.external_id(record),
        }


class LmsTrainerAdapter(_StaffAdapter):
    external_type = LMS_TRAINER
    label = "trainer"

    def external_id(self, record: dict[str, Any]) -> str:
        return str(_require(record, "id"))

    def describe(self, record: dict[str, Any]) -> str:
        return str(record.get("email") or record.get("id", "<unknown>"))

    def metadata(self, record: dict[str, Any]) -> dict[str, Any] | None:
        return record.get("metadata") or None

    def _email(self, record: dict[str, Any]) -> str | None:
        email = record.get("email")
        return str(email) if email else None

    def _fields(self, record: dict[str, Any]) -> dict[str, Any]:
        return {
            "name": f"{_require(record, 'firstName')} {record.get('lastName') or ''}".strip(),
            "email": str(_require(record, "email")).lower(),
            "department": "Training",
            "status": "Active" if record.get("status") == "active" else "Inactive",
        }


class LmsStudentAdapter:
    external_type = LMS_STUDENT
    internal_type = "Student"
    label = "student"

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock

    def external_id(self, record: dict[str, Any]) -> str:
        return str(_require(record, "id"))

    def describe(self, record: dict[str, Any]) -> str:
        name = f"{record.get('firstName') or ''} {record.get('lastName') or ''}".strip()
        return name or str(record.get("id", "<unknown>"))

    def natural_key(self, record: dict[str, Any]) -> str | None:
        # Students may share a family address; the LMS id is the only key.
        return None

    def metadata(self, record: dict[str, Any]) -> dict[str, Any] | None:
        return record.get("metadata") or None

    async def find_by_natural_key(self, session: AsyncSession, key: str) -> str | None:
        return None

    def _fields(self, record: dict[str, Any]) -> dict[str, Any]:
        return {
            "first_name": str(_require(record, "firstName")),
            "last_name": str(record.get("lastName") or ""),
            "email": record.get("email") or None,
            "phone": record.get("phone") or None,
            "enrollment_status": record.get("enrollmentStatus") or None,
        }

    async def update(self, session: AsyncSession, internal_id: str, record: dict[str, Any]) -> None:
        student = await _load(session, Student, internal_id)
        for column, value in self._fields(record).items():
            setattr(student, column, value)
        student.updated_at = self._clock()

    async def create(self, session: AsyncSession, record: dict[str, Any]) -> str:
        now = self._clock()
        student = Student(created_at=now, updated_at=now, **self._fields(record))
        session.add(student)
        await session.flush()
        return student.id


class LmsEnrollmentAdapter:
    """
    Enrollments hang off students synced earlier; an unknown student fails
    the record. Courses resolve to training products through `lms.course`
    mappings maintained by the back office.
    """

    external_type = LMS_ENROLLMENT
    internal_type = "Enrollment"
    label = "enrollment"

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock

    def external_id(self, record: dict[str, Any]) -> str:
        return str(_require(record, "id"))

    def describe(self, record: dict[str, Any]) -> str:
        return str(record.get("id", "<unknown>"))

    def natural_key(self, record: dict[str, Any]) -> str | None:
        return None

    def metadata(self, record: dict[str, Any]) -> dict[str, Any] | None:
        return record.get("metadata") or None

    async def find_by_natural_key(self, session: AsyncSession, key: str) -> str | None:
        return None

    async def _fields(self, session: AsyncSession, record: dict[str, Any]) -> dict[str, Any]:
        lms_student_id = str(_require(record, "studentId"))
        student_mapping = await MappingStore.find(session, lms_student_id, LMS_STUDENT)
        if student_mapping is None:
            raise RecordSyncError(
                f"Student {lms_student_id} not found",
                meta={"student_id": lms_student_id, "enrollment_id": record.get("id")},
            )

        course_id = str(_require(record, "courseId"))
        course_mapping = await MappingStore.find(session, course_id, LMS_COURSE)

        return {
            "student_id": student_mapping.internal_id,
            "course_id": course_id,
            "training_product_id": course_mapping.internal_id if course_mapping else None,
            "status": str(_require(record, "status")),
            "enrolled_at": _optional_datetime(record.get("enrolledAt")),
            "completed_at": _optional_datetime(record.get("completedAt")),
            "completion_status": record.get("completionStatus") or None,
            "details": record.get("metadata") or None,
        }

    async def update(self, session: AsyncSession, internal_id: str, record: dict[str, Any]) -> None:
        enrollment = await _load(session, Enrollment, internal_id)
        for column, value in (await self._fields(session, record)).items():
            setattr(enrollment, column, value)
        enrollment.updated_at = self._clock()

    async def create(self, session: AsyncSession, record: dict[str, Any]) -> str:
        now = self._clock()
        enrollment = Enrollment(created_at=now, updated_at=now, **(await self._fields(session, record)))
        session.add(enrollment)
        await session.flush()
        return enrollment.id
