"""Queue facade over named, independently configured queues.

The facade owns the queue configurations, resolves one backend
connection per queue lazily, applies retry policy and translates backend
errors into the QueueError taxonomy.

Example:
    registry = TaskRegistry()
    queue = Queue(registry)
    queue.register_queue("emails", QueueConfig(MemoryConnectionFactory()))

    # Submit a job
    job_id = queue.push("emails", SendEmail("user@example.com"))

    # Process jobs (worker side)
    job = queue.pop("emails")
    if job is not None:
        outcome = queue.process(job)
        print(f"Outcome: {outcome.value}")
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

from taskline.jobs.config import DEFAULT_MAX_RETRIES, QueueConfig
from taskline.jobs.cron import is_valid
from taskline.jobs.exceptions import (
    CronEvaluationError,
    MaxRetriesExceededError,
    QueueError,
    QueueNotFoundError,
)
from taskline.jobs.job import utcnow
from taskline.jobs.retry import compute_retry_delay
from taskline.observability.logging import LogContext
from taskline.observability.metrics import MetricsRegistry, get_metrics

if TYPE_CHECKING:
    from taskline.jobs.connection import Connection
    from taskline.jobs.job import Job
    from taskline.jobs.tasks import TaskRegistry, WorkItem

logger = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    """Result of processing one job."""

    COMPLETED = "completed"
    RETRYING = "retrying"  # Released for another attempt
    FAILED = "failed"  # Terminal

    @property
    def succeeded(self) -> bool:
        return self is ProcessOutcome.COMPLETED

    def __bool__(self) -> bool:
        return self.succeeded


class Queue:
    """Orchestrates pushing, reserving and processing jobs.

    Args:
        registry: Task registry used to materialize popped payloads
        metrics: Metrics registry (defaults to the process registry)
    """

    def __init__(
        self,
        registry: TaskRegistry | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.registry = registry
        self.metrics = metrics if metrics is not None else get_metrics()
        self._configs: dict[str, QueueConfig] = {}
        self._connections: dict[str, Connection] = {}
        self._stats = {"pushed": 0, "processed": 0, "failed": 0, "retried": 0}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_queue(self, name: str, config: QueueConfig) -> Queue:
        """Register (or reconfigure) a named queue."""
        if name in self._connections:
            self._close_connection(name)
        self._configs[name] = config
        logger.info(f"Queue registered: {name}", extra={"queue": name})
        return self

    def has_queue(self, name: str) -> bool:
        return name in self._configs

    def queue_names(self) -> list[str]:
        return list(self._configs)

    def config_for(self, name: str, operation: str | None = None) -> QueueConfig:
        """Return the configuration of a registered queue.

        Raises:
            QueueNotFoundError: If the queue was never registered
        """
        config = self._configs.get(name)
        if config is None:
            raise QueueNotFoundError(name, operation)
        return config

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def _connection(self, name: str, operation: str | None = None) -> Connection:
        config = self.config_for(name, operation)

        connection = self._connections.get(name)
        if connection is not None:
            return connection

        try:
            connection = config.connection_factory.create_connection(name, config)
        except Exception as e:
            logger.error(
                f"Cannot create connection for queue '{name}': {e}",
                extra={"queue": name, "operation": operation},
            )
            raise QueueError(
                f"Cannot create connection for queue '{name}': {e}",
                queue_name=name,
                operation=operation,
            ) from e

        self._connections[name] = connection
        return connection

    @contextmanager
    def _operation(
        self,
        operation: str,
        queue_name: str,
        job_id: str | None = None,
    ) -> Iterator[None]:
        """Log backend failures and re-raise them as QueueError."""
        try:
            yield
        except QueueError as e:
            logger.error(
                f"Queue operation '{operation}' failed on '{queue_name}': {e}",
                extra={"queue": queue_name, "operation": operation, "job_id": job_id},
            )
            raise
        except Exception as e:
            logger.error(
                f"Queue operation '{operation}' failed on '{queue_name}': {e}",
                extra={"queue": queue_name, "operation": operation, "job_id": job_id},
            )
            raise QueueError(
                f"Queue operation '{operation}' failed on '{queue_name}': {e}",
                queue_name=queue_name,
                operation=operation,
                job_id=job_id,
            ) from e

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def push(
        self,
        queue_name: str,
        work: WorkItem,
        delay: int | float | timedelta | None = None,
        priority: int | None = None,
    ) -> str:
        """Push a work item onto a queue.

        Args:
            queue_name: Registered queue name
            work: Work item to execute
            delay: Seconds (or timedelta) before the job becomes executable;
                defaults to the queue's ``default_delay``
            priority: Higher = served first; defaults to the queue's
                ``default_priority``

        Returns:
            Job ID for tracking
        """
        config = self.config_for(queue_name, "push")

        if delay is None:
            delay = config.default_delay
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        execute_at = utcnow() + timedelta(seconds=delay) if delay > 0 else None

        if priority is None:
            priority = config.default_priority

        with self._operation("push", queue_name):
            job_id = self._connection(queue_name, "push").push(work, execute_at, priority)

        self._stats["pushed"] += 1
        self.metrics.record_pushed(queue_name)

        logger.info(
            f"Job pushed: {job_id} ({work.name})",
            extra={
                "queue": queue_name,
                "job_id": job_id,
                "kind": work.discriminator(),
                "priority": priority,
                "delay": delay,
            },
        )
        return job_id

    def later(
        self,
        queue_name: str,
        work: WorkItem,
        delay: int | float | timedelta,
        priority: int | None = None,
    ) -> str:
        """Push a work item that becomes executable after ``delay``."""
        return self.push(queue_name, work, delay, priority)

    def schedule(
        self,
        queue_name: str,
        work: WorkItem,
        at: datetime,
        priority: int | None = None,
    ) -> str:
        """Push a work item that becomes executable at ``at``."""
        config = self.config_for(queue_name, "schedule")
        if priority is None:
            priority = config.default_priority

        with self._operation("schedule", queue_name):
            job_id = self._connection(queue_name, "schedule").schedule(work, at, priority)

        self._stats["pushed"] += 1
        self.metrics.record_pushed(queue_name)

        logger.info(
            f"Job scheduled: {job_id} ({work.name}) at {at.isoformat()}",
            extra={"queue": queue_name, "job_id": job_id, "kind": work.discriminator()},
        )
        return job_id

    def recurring(
        self,
        queue_name: str,
        work: WorkItem,
        cron: str,
        priority: int | None = None,
        name: str | None = None,
    ) -> str:
        """Register a recurring job with the backend.

        Registrations are keyed by ``name`` (the work item name when not
        given), so re-registering a name updates it in place.

        Raises:
            CronEvaluationError: If the cron expression is malformed
            QueueError: If the backend does not support recurring jobs
        """
        config = self.config_for(queue_name, "recurring")
        if not is_valid(cron):
            raise CronEvaluationError(
                f"Invalid cron expression: {cron!r}",
                queue_name=queue_name,
                operation="recurring",
            )
        if priority is None:
            priority = config.default_priority

        with self._operation("recurring", queue_name):
            connection = self._connection(queue_name, "recurring")
            if not connection.supports_recurring():
                raise QueueError(
                    f"Backend of queue '{queue_name}' does not support recurring jobs",
                    queue_name=queue_name,
                    operation="recurring",
                )
            recurring_id = connection.register_recurring_job(work, cron, priority, name)

        logger.info(
            f"Recurring job registered: {recurring_id} ({name or work.name}) '{cron}'",
            extra={"queue": queue_name, "job_id": recurring_id, "cron": cron},
        )
        return recurring_id

    def remove_recurring(self, queue_name: str, recurring_id: str) -> bool:
        """Cancel a backend recurring registration.

        Returns False when the backend has no recurring support or does
        not know the id.
        """
        with self._operation("remove_recurring", queue_name, recurring_id):
            connection = self._connection(queue_name, "remove_recurring")
            if not connection.supports_recurring():
                return False
            removed = connection.remove_recurring_job(recurring_id)

        if removed:
            logger.info(
                f"Recurring job removed: {recurring_id}",
                extra={"queue": queue_name, "job_id": recurring_id},
            )
        return removed

    def get_recurring_jobs(self, queue_name: str) -> list[dict[str, Any]]:
        with self._operation("get_recurring_jobs", queue_name):
            return self._connection(queue_name, "get_recurring_jobs").get_recurring_jobs()

    # ------------------------------------------------------------------
    # Reserve / process
    # ------------------------------------------------------------------

    def pop(self, queue_name: str) -> Job | None:
        """Reserve the next executable job of a queue, if any."""
        with self._operation("pop", queue_name):
            job = self._connection(queue_name, "pop").pop()

        if job is None:
            return None

        if job.registry is None:
            job.registry = self.registry

        logger.debug(
            f"Job reserved: {job.id}",
            extra={"queue": queue_name, "job_id": job.id, "attempts": job.attempts},
        )
        return job

    def process(self, job: Job) -> ProcessOutcome:
        """Execute a reserved job and record its outcome.

        Failures are handled here: the job is released for a retry while
        its attempts stay within ``max_retries``, otherwise it is failed
        permanently. Never raises.
        """
        queue_name = job.queue
        config = self._configs.get(queue_name)

        with LogContext(queue=queue_name, job_id=job.id):
            logger.info(
                f"Processing job {job.id} ({job.kind})",
                extra={"kind": job.kind, "attempts": job.attempts},
            )
            started = time.perf_counter()

            try:
                work = job.resolve_work(self.registry)
                work.handle()
            except Exception as e:
                duration = time.perf_counter() - started
                self._stats["failed"] += 1
                self.metrics.record_failed(queue_name, duration)

                logger.error(
                    f"Job {job.id} raised {type(e).__name__}: {e}",
                    extra={"kind": job.kind, "attempts": job.attempts},
                )
                return self._handle_failure(job, e, config)

            duration = time.perf_counter() - started
            job.mark_as_complete()
            self._stats["processed"] += 1
            self.metrics.record_processed(queue_name, duration)
            self._persist(job, "complete")

            logger.info(
                f"Job completed: {job.id} in {duration:.3f}s",
                extra={"kind": job.kind, "duration": round(duration, 6)},
            )
            return ProcessOutcome.COMPLETED

    def _handle_failure(
        self,
        job: Job,
        exception: Exception,
        config: QueueConfig | None,
    ) -> ProcessOutcome:
        max_retries = config.max_retries if config else DEFAULT_MAX_RETRIES

        if job.attempts > max_retries:
            error = MaxRetriesExceededError(
                f"Job {job.id} failed after {job.attempts} attempts: {exception}",
                queue_name=job.queue,
                job_id=job.id,
            )
            error.__cause__ = exception
            self._fail(job, error, config)
            return ProcessOutcome.FAILED

        try:
            delay = self._retry_delay(job, config)
            job.mark_for_retry(delay)
            self._connection(job.queue, "retry").update(job)
        except Exception as e:
            logger.error(
                f"Cannot release job {job.id} for retry: {e}",
                extra={"attempts": job.attempts},
            )
            self._fail(job, exception, config)
            return ProcessOutcome.FAILED

        self._stats["retried"] += 1
        self.metrics.record_retried(job.queue)

        logger.info(
            f"Job {job.id} released for retry in {delay}s "
            f"(attempt {job.attempts}/{max_retries + 1})",
            extra={"attempts": job.attempts, "retry_delay": delay},
        )
        return ProcessOutcome.RETRYING

    @staticmethod
    def _retry_delay(job: Job, config: QueueConfig | None) -> int:
        if config is None:
            return compute_retry_delay(job.attempts)
        return compute_retry_delay(job.attempts, config.retry_strategy, config.retry_delay)

    def fail(self, job: Job, exception: BaseException) -> None:
        """Fail a job permanently, e.g. after an error outside ``process``."""
        with LogContext(queue=job.queue, job_id=job.id):
            self._fail(job, exception, self._configs.get(job.queue))

    def _fail(self, job: Job, exception: BaseException, config: QueueConfig | None) -> None:
        """Move a job to the terminal failed state and persist it."""
        job.mark_as_failed(exception)

        try:
            connection = self._connection(job.queue, "fail")
            store = config.store_failed_jobs if config else True
            if store and connection.has_failed_job_storage():
                connection.store_failed_job(job, exception)
                logger.info(f"Failed job stored: {job.id}")
            else:
                connection.update(job)
        except Exception as e:
            logger.error(f"Cannot persist failed job {job.id}: {e}")

        logger.warning(
            f"Job failed permanently: {job.id} after {job.attempts} attempts",
            extra={"kind": job.kind, "attempts": job.attempts, "error": job.error_message},
        )

    def _persist(self, job: Job, operation: str) -> None:
        try:
            self._connection(job.queue, operation).update(job)
        except Exception as e:
            logger.error(f"Cannot persist job {job.id} after {operation}: {e}")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def remove(self, queue_name: str, job_id: str) -> bool:
        with self._operation("remove", queue_name, job_id):
            removed = self._connection(queue_name, "remove").remove(job_id)

        if removed:
            logger.info(f"Job removed: {job_id}", extra={"queue": queue_name, "job_id": job_id})
        else:
            logger.info(
                f"Job not removed (unknown id): {job_id}",
                extra={"queue": queue_name, "job_id": job_id},
            )
        return removed

    def prune(self, queue_name: str, max_age: int | None = None) -> int:
        """Delete finished jobs older than ``max_age`` seconds.

        Defaults to the queue's ``max_age``.
        """
        config = self.config_for(queue_name, "prune")
        if max_age is None:
            max_age = config.max_age

        with self._operation("prune", queue_name):
            count = self._connection(queue_name, "prune").prune(max_age)

        logger.info(
            f"Pruned {count} jobs older than {max_age}s",
            extra={"queue": queue_name, "count": count},
        )
        return count

    def clear(self, queue_name: str) -> int:
        with self._operation("clear", queue_name):
            count = self._connection(queue_name, "clear").clear()

        logger.warning(f"Queue cleared: {count} jobs", extra={"queue": queue_name})
        return count

    def retry(self, queue_name: str, job_id: str) -> bool:
        """Re-enqueue a job from failed job storage.

        Raises:
            QueueError: If the backend has no failed job storage
        """
        with self._operation("retry", queue_name, job_id):
            connection = self._connection(queue_name, "retry")
            if not connection.has_failed_job_storage():
                raise QueueError(
                    f"Backend of queue '{queue_name}' has no failed job storage",
                    queue_name=queue_name,
                    operation="retry",
                    job_id=job_id,
                )
            retried = connection.retry_failed_job(job_id)

        if retried:
            self._stats["retried"] += 1
            self.metrics.record_retried(queue_name)
            logger.info(
                f"Failed job re-enqueued: {job_id}",
                extra={"queue": queue_name, "job_id": job_id},
            )
        else:
            logger.info(
                f"Failed job not found: {job_id}",
                extra={"queue": queue_name, "job_id": job_id},
            )
        return retried

    def get_failed_jobs(
        self,
        queue_name: str,
        limit: int = 10,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        with self._operation("get_failed_jobs", queue_name):
            return self._connection(queue_name, "get_failed_jobs").get_failed_jobs(limit, offset)

    def get_stats(self, queue_name: str | None = None) -> dict[str, Any]:
        """Process counters, plus backend counts of one queue if named.

        A backend that cannot report is logged and reported as an
        ``error`` entry instead of raising.
        """
        stats: dict[str, Any] = dict(self._stats)
        if queue_name is None:
            return stats

        connection = self._connection(queue_name, "get_stats")
        try:
            backend = connection.get_stats()
        except Exception as e:
            logger.warning(
                f"Cannot read stats of queue '{queue_name}': {e}",
                extra={"queue": queue_name},
            )
            stats["queue"] = {"name": queue_name, "error": str(e)}
            return stats

        stats["queue"] = {
            "name": queue_name,
            "pending": backend.get("pending", 0),
            "reserved": backend.get("reserved", 0),
            "failed": backend.get("failed", 0),
            "delayed": backend.get("delayed", 0),
            "done": backend.get("done", 0),
        }
        return stats

    def _close_connection(self, name: str) -> None:
        connection = self._connections.pop(name, None)
        if connection is None:
            return
        try:
            connection.close()
            logger.debug(f"Queue connection closed: {name}", extra={"queue": name})
        except Exception as e:
            logger.warning(f"Cannot close connection of queue '{name}': {e}")

    def close_all(self) -> None:
        """Close every cached backend connection."""
        for name in list(self._connections):
            self._close_connection(name)
