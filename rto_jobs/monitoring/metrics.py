"""
Prometheus Metrics

Defines and exports metrics for the job queue, worker pool, scheduler and
reconciliation runs.
"""

from __future__ import annotations

import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger()

# Collectors register with the default registry, so one instance per process.
_metrics: "Metrics | None" = None


class Metrics:
    """
    Prometheus metrics for background jobs.

    Tracks:
    - Jobs processed by type and outcome, and their duration
    - Retries, dead-lettered jobs and stalled requeues
    - Scheduler firings
    - Records reconciled per sync type
    - Queue depth per state
    """

    def __init__(self) -> None:
        self.jobs_processed_total = Counter(
            "rto_jobs_processed_total",
            "Total jobs processed by the worker pool",
            ["job_type", "outcome"],  # outcome: completed | failed
        )

        self.job_duration_seconds = Histogram(
            "rto_job_duration_seconds",
            "Handler execution time in seconds",
            ["job_type"],
            buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
        )

        self.job_retries_total = Counter(
            "rto_job_retries_total",
            "Failed attempts scheduled for retry",
            ["job_type"],
        )

        self.jobs_dead_lettered_total = Counter(
            "rto_jobs_dead_lettered_total",
            "Jobs moved to the dead letter store",
            ["job_type"],
        )

        self.jobs_stalled_total = Counter(
            "rto_jobs_stalled_total",
            "Active jobs whose lock expired without a heartbeat",
            ["job_type"],
        )

        self.scheduler_firings_total = Counter(
            "rto_scheduler_firings_total",
            "Recurring schedule firings",
            ["job_type"],
        )

        self.sync_records_total = Counter(
            "rto_sync_records_total",
            "Upstream records reconciled",
            ["sync_type", "status"],  # status: synced | failed
        )

        self.sync_runs_total = Counter(
            "rto_sync_runs_total",
            "Reconciliation runs",
            ["sync_type", "status"],
        )

        self.upstream_http_retries_total = Counter(
            "rto_upstream_http_retries_total",
            "Upstream HTTP retries by provider, reason and status",
            ["provider", "reason", "status_code"],
        )

        self.queue_depth = Gauge(
            "rto_queue_depth",
            "Queue items per state at the last metrics read",
            ["state"],
        )

        logger.info("Prometheus metrics initialized")

    def track_job(self, job_type: str, outcome: str, duration: float) -> None:
        self.jobs_processed_total.labels(job_type=job_type, outcome=outcome).inc()
        self.job_duration_seconds.labels(job_type=job_type).observe(duration)

    def track_retry(self, job_type: str) -> None:
        self.job_retries_total.labels(job_type=job_type).inc()

    def track_dead_letter(self, job_type: str) -> None:
        self.jobs_dead_lettered_total.labels(job_type=job_type).inc()

    def track_stalled(self, job_type: str) -> None:
        self.jobs_stalled_total.labels(job_type=job_type).inc()

    def track_scheduler_firing(self, job_type: str) -> None:
        self.scheduler_firings_total.labels(job_type=job_type).inc()

    def track_sync_run(self, sync_type: str, status: str, *, synced: int, failed: int) -> None:
        """Track a reconciliation run and its record counts."""
        self.sync_runs_total.labels(sync_type=sync_type, status=status).inc()
        if synced > 0:
            self.sync_records_total.labels(sync_type=sync_type, status="synced").inc(synced)
        if failed > 0:
            self.sync_records_total.labels(sync_type=sync_type, status="failed").inc(failed)

    def track_http_retry(self, provider: str, reason: str, status_code: int | str) -> None:
        self.upstream_http_retries_total.labels(
            provider=provider,
            reason=reason,
            status_code=str(status_code),
        ).inc()

    def set_queue_depth(self, counts: dict[str, int]) -> None:
        for state, count in counts.items():
            self.queue_depth.labels(state=state).set(count)


def get_metrics() -> Metrics:
    """Get or create the process-wide metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics
