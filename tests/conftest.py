"""Global pytest configuration and fixtures.

Provides sample work items, a task registry knowing them and queue
facades backed by the in-memory backend.
"""

from __future__ import annotations

from typing import Any

import pytest

from taskline.jobs import (
    MemoryConnectionFactory,
    Queue,
    QueueConfig,
    RetryStrategy,
    TaskRegistry,
    WorkItem,
)
from taskline.observability.metrics import MetricsRegistry


class Echo(WorkItem):
    """Records its message in ``Echo.calls``."""

    calls: list[str] = []

    def __init__(self, message: str = "", id: str | None = None) -> None:
        super().__init__(id)
        self.message = message

    def handle(self) -> Any:
        Echo.calls.append(self.message)
        return self.message

    def to_data(self) -> dict[str, Any]:
        return {"message": self.message}

    def load_data(self, data: dict[str, Any]) -> None:
        self.message = data.get("message", "")


class Boom(WorkItem):
    """Always raises; permanent failures land in ``Boom.failures``."""

    attempts = 0
    failures: list[str] = []

    def handle(self) -> Any:
        Boom.attempts += 1
        raise RuntimeError("boom")

    def failed(self, exception: BaseException) -> None:
        Boom.failures.append(str(exception))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "redis: tests running against fakeredis")


@pytest.fixture(autouse=True)
def reset_sample_tasks() -> None:
    """Clear the class-level recordings of the sample tasks."""
    Echo.calls = []
    Boom.attempts = 0
    Boom.failures = []


@pytest.fixture
def registry() -> TaskRegistry:
    """Registry knowing the sample tasks."""
    registry = TaskRegistry()
    registry.register(Echo.discriminator(), Echo.from_dict)
    registry.register(Boom.discriminator(), Boom.from_dict)
    return registry


@pytest.fixture
def metrics() -> MetricsRegistry:
    """Disabled metrics, so tests never touch the process registry."""
    return MetricsRegistry(enabled=False)


@pytest.fixture
def queue_config() -> QueueConfig:
    """Memory-backed config whose retries are immediately poppable."""
    return QueueConfig(
        MemoryConnectionFactory(),
        max_retries=2,
        retry_delay=0,
        retry_strategy=RetryStrategy.FIXED,
    )


@pytest.fixture
def queue(registry: TaskRegistry, metrics: MetricsRegistry, queue_config: QueueConfig) -> Queue:
    """Queue facade with a ``default`` queue registered."""
    queue = Queue(registry, metrics=metrics)
    queue.register_queue("default", queue_config)
    return queue
