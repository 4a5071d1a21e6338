"""Prometheus metrics for job processing.

Provides:
- Job throughput counters (pushed, processed, failed, retried) per queue
- Job execution latency histogram

Usage:
    from taskline.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.record_pushed("emails")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from taskline.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics.

    Args:
        registry: Prometheus collector registry (defaults to the global one)
        enabled: Override of ``settings.enable_metrics``
    """

    registry: Any = None
    enabled: bool | None = None

    # Job metrics
    jobs_pushed_total: Any = None
    jobs_processed_total: Any = None
    jobs_failed_total: Any = None
    jobs_retried_total: Any = None
    job_duration_seconds: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        enabled = settings.enable_metrics if self.enabled is None else self.enabled
        if not enabled:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        from prometheus_client import REGISTRY, Counter, Histogram

        if self.registry is None:
            self.registry = REGISTRY

        self.jobs_pushed_total = Counter(
            "taskline_jobs_pushed_total",
            "Jobs pushed onto a queue",
            ["queue"],
            registry=self.registry,
        )

        self.jobs_processed_total = Counter(
            "taskline_jobs_processed_total",
            "Jobs completed successfully",
            ["queue"],
            registry=self.registry,
        )

        self.jobs_failed_total = Counter(
            "taskline_jobs_failed_total",
            "Job executions that raised",
            ["queue"],
            registry=self.registry,
        )

        self.jobs_retried_total = Counter(
            "taskline_jobs_retried_total",
            "Jobs released for another attempt",
            ["queue"],
            registry=self.registry,
        )

        self.job_duration_seconds = Histogram(
            "taskline_job_duration_seconds",
            "Job execution time in seconds",
            ["queue"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
            registry=self.registry,
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self.registry is None:
            return b"# Metrics disabled\n"

        from prometheus_client import generate_latest

        return generate_latest(self.registry)

    def record_pushed(self, queue: str) -> None:
        if self.jobs_pushed_total:
            self.jobs_pushed_total.labels(queue=queue).inc()

    def record_processed(self, queue: str, duration: float) -> None:
        if self.jobs_processed_total:
            self.jobs_processed_total.labels(queue=queue).inc()
        if self.job_duration_seconds:
            self.job_duration_seconds.labels(queue=queue).observe(duration)

    def record_failed(self, queue: str, duration: float | None = None) -> None:
        if self.jobs_failed_total:
            self.jobs_failed_total.labels(queue=queue).inc()
        if duration is not None and self.job_duration_seconds:
            self.job_duration_seconds.labels(queue=queue).observe(duration)

    def record_retried(self, queue: str) -> None:
        if self.jobs_retried_total:
            self.jobs_retried_total.labels(queue=queue).inc()


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry
