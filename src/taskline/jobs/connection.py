"""Backend connection contract.

A connection is the durable storage behind one named queue. The Queue
facade only talks to backends through this interface.

Guarantees a backend must provide:
- ``pop`` reserves atomically: two callers never receive the same job
- jobs with a higher priority are popped first; equal priorities are
  served in insertion order by the shipped backends (not guaranteed by
  the contract)
- a reservation older than the queue's ``max_execution_time`` counts as
  abandoned and the job becomes poppable again
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from taskline.jobs.config import QueueConfig
    from taskline.jobs.job import Job
    from taskline.jobs.tasks import WorkItem


class Connection(ABC):
    """Storage operations for a single queue."""

    @abstractmethod
    def push(
        self,
        work: WorkItem,
        execute_at: datetime | None = None,
        priority: int = 0,
    ) -> str:
        """Enqueue a work item and return the job id."""

    @abstractmethod
    def pop(self) -> Job | None:
        """Atomically reserve the next executable job."""

    def schedule(self, work: WorkItem, execute_at: datetime, priority: int = 0) -> str:
        """Enqueue a work item to run at a given time."""
        return self.push(work, execute_at, priority)

    @abstractmethod
    def update(self, job: Job) -> None:
        """Persist a lifecycle transition of a popped job.

        Completed jobs are kept until pruned, jobs marked for retry become
        poppable again at their execute_at, failed jobs stay visible as
        failed until pruned.
        """

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Delete a job; False if it did not exist."""

    @abstractmethod
    def prune(self, max_age: int) -> int:
        """Delete finished jobs older than ``max_age`` seconds."""

    @abstractmethod
    def clear(self) -> int:
        """Delete every job of the queue."""

    @abstractmethod
    def get_stats(self) -> dict[str, int]:
        """Counts keyed by pending, reserved, failed, delayed, done."""

    def supports_recurring(self) -> bool:
        return False

    def register_recurring_job(
        self,
        work: WorkItem,
        cron: str,
        priority: int = 0,
        name: str | None = None,
    ) -> str:
        """Register or update a recurring definition.

        Definitions are keyed by ``name`` (the work item name when not
        given); registering an existing name updates it in place.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support recurring jobs")

    def remove_recurring_job(self, recurring_id: str) -> bool:
        raise NotImplementedError(f"{type(self).__name__} does not support recurring jobs")

    def get_recurring_jobs(self) -> list[dict[str, Any]]:
        return []

    def has_failed_job_storage(self) -> bool:
        return False

    def store_failed_job(self, job: Job, exception: BaseException) -> None:
        """Move a permanently failed job into failed job storage."""
        raise NotImplementedError(f"{type(self).__name__} has no failed job storage")

    def get_failed_jobs(self, limit: int = 10, offset: int = 0) -> list[dict[str, Any]]:
        return []

    def retry_failed_job(self, job_id: str) -> bool:
        raise NotImplementedError(f"{type(self).__name__} has no failed job storage")

    def close(self) -> None:
        """Release backend resources."""


class ConnectionFactory(Protocol):
    """Builds the connection for a named queue."""

    def create_connection(self, queue_name: str, config: QueueConfig) -> Connection: ...
