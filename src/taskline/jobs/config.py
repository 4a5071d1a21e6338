"""Per-queue configuration.

Example:
    config = (
        QueueConfig(MemoryConnectionFactory())
        .set_max_retries(5)
        .set_retry_delay(300)
        .set_retry_strategy(RetryStrategy.LINEAR)
    )
    queue.register_queue("emails", config)
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

from taskline.jobs.connection import ConnectionFactory
from taskline.jobs.exceptions import ConfigurationError
from taskline.jobs.retry import RetryStrategy

# Default configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 60
DEFAULT_MAX_AGE = 86400 * 7  # 7 days
DEFAULT_MAX_EXECUTION_TIME = 60
DEFAULT_BATCH_SIZE = 10
DEFAULT_UNIQUE_JOBS_EXPIRATION = 86400  # 24 hours

_NON_NEGATIVE = (
    "max_retries",
    "retry_delay",
    "default_delay",
    "max_age",
    "max_execution_time",
    "unique_jobs_expiration",
)


@dataclass
class QueueConfig:
    """Retry, priority and backend policy of one named queue."""

    connection_factory: ConnectionFactory
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: int = DEFAULT_RETRY_DELAY
    retry_strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    default_priority: int = 0
    default_delay: int = 0
    auto_prune: bool = True
    max_age: int = DEFAULT_MAX_AGE
    max_execution_time: int = DEFAULT_MAX_EXECUTION_TIME
    store_failed_jobs: bool = True
    batch_size: int = DEFAULT_BATCH_SIZE
    support_unique_jobs: bool = True
    unique_jobs_expiration: int = DEFAULT_UNIQUE_JOBS_EXPIRATION

    def __post_init__(self) -> None:
        if self.connection_factory is None:
            raise ConfigurationError("QueueConfig requires a connection factory")
        if not hasattr(self.connection_factory, "create_connection"):
            raise ConfigurationError(
                f"{type(self.connection_factory).__name__} is not a connection factory"
            )
        self.retry_strategy = self._coerce_strategy(self.retry_strategy)
        for name in _NON_NEGATIVE:
            self._check_non_negative(name, getattr(self, name))
        self._check_batch_size(self.batch_size)

    @staticmethod
    def _coerce_strategy(value: RetryStrategy | str) -> RetryStrategy:
        try:
            return RetryStrategy(value.lower() if isinstance(value, str) else value)
        except ValueError as e:
            raise ConfigurationError(f"Unknown retry strategy: {value!r}") from e

    @staticmethod
    def _check_non_negative(name: str, value: int) -> None:
        if value < 0:
            raise ConfigurationError(f"{name} must be >= 0, got {value}")

    @staticmethod
    def _check_batch_size(value: int) -> None:
        if value < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {value}")

    @classmethod
    def from_options(cls, connection_factory: ConnectionFactory, **options: Any) -> QueueConfig:
        """Build a config from keyword options, rejecting unknown names."""
        known = {f.name for f in fields(cls)} - {"connection_factory"}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown queue options: {', '.join(sorted(unknown))}")
        return cls(connection_factory=connection_factory, **options)

    # Builder-style setters

    def set_max_retries(self, max_retries: int) -> QueueConfig:
        self._check_non_negative("max_retries", max_retries)
        self.max_retries = max_retries
        return self

    def set_retry_delay(self, retry_delay: int) -> QueueConfig:
        self._check_non_negative("retry_delay", retry_delay)
        self.retry_delay = retry_delay
        return self

    def set_retry_strategy(self, retry_strategy: RetryStrategy | str) -> QueueConfig:
        self.retry_strategy = self._coerce_strategy(retry_strategy)
        return self

    def set_default_priority(self, default_priority: int) -> QueueConfig:
        self.default_priority = default_priority
        return self

    def set_default_delay(self, default_delay: int) -> QueueConfig:
        self._check_non_negative("default_delay", default_delay)
        self.default_delay = default_delay
        return self

    def set_auto_prune(self, auto_prune: bool) -> QueueConfig:
        self.auto_prune = auto_prune
        return self

    def set_max_age(self, max_age: int) -> QueueConfig:
        self._check_non_negative("max_age", max_age)
        self.max_age = max_age
        return self

    def set_max_execution_time(self, max_execution_time: int) -> QueueConfig:
        self._check_non_negative("max_execution_time", max_execution_time)
        self.max_execution_time = max_execution_time
        return self

    def set_store_failed_jobs(self, store_failed_jobs: bool) -> QueueConfig:
        self.store_failed_jobs = store_failed_jobs
        return self

    def set_batch_size(self, batch_size: int) -> QueueConfig:
        self._check_batch_size(batch_size)
        self.batch_size = batch_size
        return self

    def set_support_unique_jobs(self, support_unique_jobs: bool) -> QueueConfig:
        self.support_unique_jobs = support_unique_jobs
        return self

    def set_unique_jobs_expiration(self, unique_jobs_expiration: int) -> QueueConfig:
        self._check_non_negative("unique_jobs_expiration", unique_jobs_expiration)
        self.unique_jobs_expiration = unique_jobs_expiration
        return self
