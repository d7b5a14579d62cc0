"""Prometheus metrics for the worker process."""

from rto_jobs.monitoring.metrics import Metrics, get_metrics

__all__ = ["Metrics", "get_metrics"]
