"""
Local records written by the upstream syncs.

Only the columns the reconciliation handlers own are modelled here; the rest
of these tables belongs to the back office's CRUD layer.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, ForeignKey, Text

from rto_jobs.db.models.base import Base, UTCDateTime
from rto_jobs.kernel.time import utc_now


class StaffMember(Base):
    __tablename__ = "staff_member"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    department = Column(Text, nullable=False, default="Support")
    status = Column(Text, nullable=False, default="Active")
    payroll_employee_id = Column(Text, nullable=True, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class Student(Base):
    __tablename__ = "student"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    email = Column(Text, nullable=True, index=True)
    phone = Column(Text, nullable=True)
    enrollment_status = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)


class Enrollment(Base):
    __tablename__ = "enrollment"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    student_id = Column(Text, ForeignKey("student.id"), nullable=False, index=True)
    course_id = Column(Text, nullable=False)
    training_product_id = Column(Text, nullable=True)
    status = Column(Text, nullable=False)
    enrolled_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    completion_status = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)
