"""Persistence layer: async engine/session management and ORM models."""

from rto_jobs.db.client import Database

__all__ = ["Database"]
