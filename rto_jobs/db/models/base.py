"""Declarative base and shared column types."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from rto_jobs.kernel.time import coerce_utc

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    Postgres keeps the offset; SQLite drops it, so values are normalized to
    UTC on the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):  # type: ignore[override]
        if value is None:
            return None
        return coerce_utc(value)

    def process_result_value(self, value: datetime | None, dialect):  # type: ignore[override]
        if value is None:
            return None
        return coerce_utc(value)
