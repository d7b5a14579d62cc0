"""Upstream reconciliation: paged fetch, per-record upsert, mapping bookkeeping."""

from rto_jobs.sync.reconciliation import (
    RecordAdapter,
    ReconciliationEngine,
    SyncResult,
    UpstreamPage,
)
from rto_jobs.sync.sync_log import SyncLogView, SyncStatus

__all__ = [
    "RecordAdapter",
    "ReconciliationEngine",
    "SyncLogView",
    "SyncResult",
    "SyncStatus",
    "UpstreamPage",
]
