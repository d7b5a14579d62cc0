"""Optional Prometheus HTTP server for the worker process.

Enable by setting `PROMETHEUS_METRICS_PORT` in the process environment.
"""

from __future__ import annotations

import structlog
from prometheus_client import start_http_server

logger = structlog.get_logger()

_started = False


def maybe_start_prometheus_http_server(port: int | None, *, component: str) -> bool:
    """Start a metrics server if a port is configured. Returns True when started."""
    global _started
    if _started or port is None:
        return False

    if port <= 0 or port > 65535:
        logger.warning(
            "Invalid PROMETHEUS_METRICS_PORT (metrics server disabled)",
            component=component,
            value=port,
        )
        return False

    # Listen on all interfaces so the Prometheus container can scrape it.
    start_http_server(port, addr="0.0.0.0")
    _started = True
    logger.info("Prometheus metrics server started", component=component, port=port)
    return True
