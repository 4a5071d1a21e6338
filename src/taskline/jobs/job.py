"""Job entity and lifecycle.

A job wraps one work item with identity, timing and attempt bookkeeping:

    Created → Executable ⇄ Reserved → Completed
                                    → Executable (retry, after a delay)
                                    → Failed (terminal)

At most one of reserved/failed is active at a time: reserving clears the
failure fields and failing clears the reservation.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Mapping

from taskline.jobs.exceptions import JobError, JobSerializationError
from taskline.jobs.tasks import WorkItem

if TYPE_CHECKING:
    from taskline.jobs.tasks import TaskRegistry

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _parse(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Job:
    """One unit of deferred work.

    Args:
        id: Job identifier
        queue: Name of the queue the job belongs to
        payload: Live work item or its serialized mapping
        attempts: Reservations made so far
        created_at: Creation time (defaults to now)
        execute_at: Earliest execution time (None = as soon as possible,
            naive values are taken as UTC)
        priority: Higher values are served first
        registry: Registry used to materialize a serialized payload
    """

    def __init__(
        self,
        id: str,
        queue: str,
        payload: WorkItem | Mapping[str, Any],
        attempts: int = 0,
        created_at: datetime | None = None,
        execute_at: datetime | None = None,
        priority: int = 0,
        registry: TaskRegistry | None = None,
    ) -> None:
        self.id = id
        self.queue = queue
        self.attempts = attempts
        self.created_at = created_at or utcnow()
        self.execute_at = _parse(execute_at)
        self.priority = priority
        self.registry = registry

        self.last_executed_at: datetime | None = None
        self.reserved_at: datetime | None = None
        self.failed_at: datetime | None = None
        self.completed_at: datetime | None = None
        self.error_message: str | None = None
        self.error_trace: str | None = None

        self._work: WorkItem | None
        if isinstance(payload, WorkItem):
            self._work = payload
            self.payload: dict[str, Any] = payload.to_dict()
        else:
            self._work = None
            self.payload = dict(payload)

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    @property
    def kind(self) -> str:
        """Discriminator of the payload (``"unknown"`` if absent)."""
        return str(self.payload.get("class") or self.payload.get("kind") or "unknown")

    @property
    def work(self) -> WorkItem | None:
        """The live work item, materialized lazily.

        Failures are tolerated: the payload stays serialized-only and
        None is returned.
        """
        if self._work is None and self.registry is not None:
            try:
                self._work = self.registry.create(self.payload)
            except JobError as e:
                logger.debug(f"Payload of job {self.id} not materialized: {e}")
        return self._work

    def resolve_work(self, registry: TaskRegistry | None = None) -> WorkItem:
        """Return the live work item or raise.

        Raises:
            JobError: If no registry is available or the payload is unknown
        """
        if self._work is not None:
            return self._work

        if registry is None:
            registry = self.registry
        if registry is None:
            raise JobError(f"Job {self.id} has no task registry to load its payload")

        self._work = registry.create(self.payload)
        return self._work

    # ------------------------------------------------------------------
    # State predicates
    # ------------------------------------------------------------------

    def is_executable(self, now: datetime | None = None) -> bool:
        """Not reserved and due (no execute_at or execute_at <= now)."""
        if self.reserved_at is not None:
            return False
        if self.execute_at is None:
            return True
        return self.execute_at <= (now or utcnow())

    def is_reserved(self) -> bool:
        return self.reserved_at is not None

    def has_failed(self) -> bool:
        return self.failed_at is not None

    def is_completed(self) -> bool:
        return self.completed_at is not None

    def effective_timeout(self, max_execution_time: int) -> int:
        """The smaller of the given limit and the work item's own timeout."""
        work = self.work
        if work is not None and work.timeout is not None:
            return min(max_execution_time, work.timeout)
        return max_execution_time

    def has_timed_out(self, max_execution_time: int, now: datetime | None = None) -> bool:
        """Check whether the reservation is older than the allowed time."""
        if self.reserved_at is None:
            return False

        limit = self.effective_timeout(max_execution_time)
        return (now or utcnow()) > self.reserved_at + timedelta(seconds=limit)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_as_reserved(self) -> Job:
        self.reserved_at = utcnow()
        self.attempts += 1
        self.failed_at = None
        self.completed_at = None
        self.error_message = None
        self.error_trace = None
        return self

    def mark_as_complete(self) -> Job:
        if self.completed_at is not None:
            return self

        now = utcnow()
        self.last_executed_at = now
        self.completed_at = now
        self.reserved_at = None
        self.failed_at = None
        self.error_message = None
        self.error_trace = None
        return self

    def mark_for_retry(self, delay: int | float | timedelta = 0) -> Job:
        """Release the job so it becomes executable after ``delay``."""
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()

        now = utcnow()
        self.last_executed_at = now
        self.reserved_at = None
        self.failed_at = None
        self.completed_at = None
        self.error_message = None
        self.error_trace = None
        self.execute_at = now + timedelta(seconds=delay) if delay > 0 else None
        return self

    def mark_as_failed(self, exception: BaseException) -> Job:
        """Move the job to the terminal failed state.

        The work item's ``failed()`` hook is invoked when the item can be
        resolved; errors raised by the hook are logged and dropped.
        """
        now = utcnow()
        self.last_executed_at = now
        self.failed_at = now
        self.reserved_at = None
        self.completed_at = None
        self.error_message = str(exception) or type(exception).__name__
        self.error_trace = "".join(
            traceback.format_exception(type(exception), exception, exception.__traceback__)
        )

        work = self.work
        if work is not None:
            try:
                work.failed(exception)
            except Exception as e:
                logger.warning(
                    f"failed() hook raised for job {self.id}: {e}",
                    extra={"job_id": self.id, "queue": self.queue},
                )

        return self

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize job to dictionary."""
        return {
            "id": self.id,
            "queue": self.queue,
            "payload": self.payload,
            "attempts": self.attempts,
            "last_executed_at": _format(self.last_executed_at),
            "reserved_at": _format(self.reserved_at),
            "failed_at": _format(self.failed_at),
            "completed_at": _format(self.completed_at),
            "error_message": self.error_message,
            "error_trace": self.error_trace,
            "created_at": _format(self.created_at),
            "execute_at": _format(self.execute_at),
            "priority": self.priority,
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        registry: TaskRegistry | None = None,
    ) -> Job:
        """Deserialize job from dictionary."""
        try:
            job = cls(
                id=data["id"],
                queue=data["queue"],
                payload=data.get("payload") or {},
                attempts=int(data.get("attempts") or 0),
                created_at=_parse(data.get("created_at")),
                execute_at=_parse(data.get("execute_at")),
                priority=int(data.get("priority") or 0),
                registry=registry,
            )
            job.last_executed_at = _parse(data.get("last_executed_at"))
            job.reserved_at = _parse(data.get("reserved_at"))
            job.failed_at = _parse(data.get("failed_at"))
            job.completed_at = _parse(data.get("completed_at"))
        except (KeyError, TypeError, ValueError) as e:
            raise JobSerializationError(f"Invalid job data: {e}") from e

        job.error_message = data.get("error_message")
        job.error_trace = data.get("error_trace")
        return job

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id!r}, queue={self.queue!r}, kind={self.kind!r}, "
            f"attempts={self.attempts})"
        )
