"""Observability for queue processes.

Provides metrics and structured logging:
- Prometheus job metrics
- JSON structured logging with job, queue and worker context
"""

from taskline.observability.logging import (
    LogContext,
    configure_logging,
    get_logger,
    job_id_var,
    queue_var,
    worker_var,
)
from taskline.observability.metrics import (
    MetricsRegistry,
    get_metrics,
    metrics_registry,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "LogContext",
    "job_id_var",
    "queue_var",
    "worker_var",
    # Metrics
    "MetricsRegistry",
    "metrics_registry",
    "get_metrics",
]
