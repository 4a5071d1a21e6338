"""Cron-like job scheduler.

Keeps named recurring job definitions and pushes each one onto its queue
whenever its cron expression becomes due:
- Recurring definitions evaluated client-side by ``run_due_jobs``
- One-shot scheduling at a point in time or after a delay
- Blocking loop for a dedicated scheduler process

Example:
    scheduler = Scheduler(queue)
    scheduler.schedule_recurring("cleanup", "default", Cleanup(), "0 2 * * *")
    scheduler.schedule_recurring("report", "default", Report(), "0 9 * * mon")

    scheduler.run()  # or call scheduler.run_due_jobs() from your own loop
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from taskline.config import settings
from taskline.jobs.cron import is_due, is_valid, next_run_date
from taskline.jobs.exceptions import CronEvaluationError, QueueError, QueueNotFoundError
from taskline.jobs.job import utcnow

if TYPE_CHECKING:
    from taskline.jobs.queue import Queue
    from taskline.jobs.tasks import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class RecurringJob:
    """A recurring job definition."""

    name: str
    queue_name: str
    work: WorkItem
    cron: str
    priority: int | None = None
    last_run: datetime | None = None
    recurring_id: str | None = None

    def is_due(self, now: datetime) -> bool:
        """Never-run definitions are always due."""
        if self.last_run is None:
            return True
        return is_due(self.cron, self.last_run, now)

    @property
    def next_run(self) -> datetime | None:
        if self.last_run is None:
            return None
        return next_run_date(self.cron, self.last_run)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue_name,
            "job_class": self.work.discriminator(),
            "cron": self.cron,
            "priority": self.priority,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "recurring_id": self.recurring_id,
        }


class Scheduler:
    """Cron-like scheduler for recurring jobs.

    Args:
        queue: Queue facade jobs are pushed to
        check_interval: Seconds between checks in ``run()``
    """

    def __init__(self, queue: Queue, check_interval: float | None = None) -> None:
        self.queue = queue
        self.check_interval = (
            check_interval if check_interval is not None else settings.scheduler_interval
        )
        self._jobs: dict[str, RecurringJob] = {}
        self._running = False
        self._stop_event = threading.Event()

    def schedule_recurring(
        self,
        name: str,
        queue_name: str,
        work: WorkItem,
        cron: str,
        priority: int | None = None,
    ) -> str:
        """Register a named recurring job.

        Args:
            name: Unique definition name (re-registering replaces it)
            queue_name: Target queue
            work: Work item pushed on every run
            cron: Cron expression (5-field format or alias)
            priority: Optional job priority

        Returns:
            Recurring ID assigned by the backend

        Raises:
            CronEvaluationError: If the cron expression is malformed
            QueueNotFoundError: If the queue is not registered
        """
        if not is_valid(cron):
            raise CronEvaluationError(
                f"Invalid cron expression: {cron!r}",
                queue_name=queue_name,
                operation="schedule_recurring",
            )

        if not self.queue.has_queue(queue_name):
            raise QueueNotFoundError(queue_name, "schedule_recurring")

        try:
            recurring_id = self.queue.recurring(queue_name, work, cron, priority, name=name)
        except QueueError as e:
            logger.error(
                f"Cannot register recurring job {name}: {e}",
                extra={"queue": queue_name, "cron": cron},
            )
            raise

        previous = self._jobs.get(name)
        if previous is not None and previous.queue_name != queue_name:
            self._cancel_backend_registration(previous)

        self._jobs[name] = RecurringJob(
            name=name,
            queue_name=queue_name,
            work=work,
            cron=cron,
            priority=priority,
            recurring_id=recurring_id,
        )

        logger.info(
            f"Recurring job scheduled: {name} ({cron}) on {queue_name}",
            extra={"queue": queue_name, "cron": cron},
        )
        return recurring_id

    def schedule_at(
        self,
        queue_name: str,
        work: WorkItem,
        execute_at: datetime,
        priority: int | None = None,
    ) -> str:
        """Push a job that becomes executable at ``execute_at``."""
        try:
            return self.queue.schedule(queue_name, work, execute_at, priority)
        except QueueError as e:
            logger.error(
                f"Cannot schedule job at {execute_at.isoformat()}: {e}",
                extra={"queue": queue_name},
            )
            raise

    def schedule_in(
        self,
        queue_name: str,
        work: WorkItem,
        delay: int | float | timedelta,
        priority: int | None = None,
    ) -> str:
        """Push a job that becomes executable after ``delay`` seconds."""
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        return self.schedule_at(queue_name, work, utcnow() + delay, priority)

    def run_due_jobs(self, now: datetime | None = None) -> int:
        """Push every due recurring job, in registration order.

        A definition that cannot be pushed is logged and skipped; the
        others are still evaluated.

        Returns:
            Number of jobs pushed
        """
        now = now or utcnow()
        count = 0

        logger.debug(f"Checking {len(self._jobs)} recurring jobs")

        for name, job in list(self._jobs.items()):
            try:
                if not job.is_due(now):
                    continue

                job_id = self.queue.push(job.queue_name, job.work, None, job.priority)
                job.last_run = now
                count += 1

                logger.info(
                    f"Recurring job pushed: {name} -> {job_id}",
                    extra={"queue": job.queue_name, "job_id": job_id, "cron": job.cron},
                )
            except Exception as e:
                logger.error(
                    f"Cannot run recurring job {name}: {e}",
                    extra={"queue": job.queue_name},
                )

        return count

    def remove_recurring_job(self, name: str) -> bool:
        """Remove a recurring definition.

        Also cancels the backend registration when the backend supports
        recurring jobs; a backend failure is logged and the local
        definition is removed regardless.

        Returns:
            True if removed, False if not found
        """
        job = self._jobs.pop(name, None)
        if job is None:
            return False

        self._cancel_backend_registration(job)

        logger.info(f"Recurring job removed: {name}", extra={"queue": job.queue_name})
        return True

    def _cancel_backend_registration(self, job: RecurringJob) -> None:
        if job.recurring_id is None:
            return
        try:
            self.queue.remove_recurring(job.queue_name, job.recurring_id)
        except QueueError as e:
            logger.error(
                f"Cannot cancel backend registration of {job.name}: {e}",
                extra={"queue": job.queue_name},
            )

    def get_recurring_jobs(self) -> dict[str, dict[str, Any]]:
        """Definitions keyed by name."""
        return {name: job.to_dict() for name, job in self._jobs.items()}

    def get(self, name: str) -> RecurringJob | None:
        return self._jobs.get(name)

    def __len__(self) -> int:
        return len(self._jobs)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def run(self, interval: float | None = None) -> None:
        """Run the scheduler until stopped."""
        interval = self.check_interval if interval is None else interval
        self._running = True
        self._stop_event.clear()
        logger.info(f"Scheduler started ({len(self._jobs)} recurring jobs)")

        try:
            while not self._stop_event.is_set():
                self.run_due_jobs()
                self._stop_event.wait(interval)
        finally:
            self._running = False
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop the scheduler loop after the current check."""
        self._stop_event.set()
