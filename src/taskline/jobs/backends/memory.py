"""In-process queue backend.

Keeps serialized jobs in dictionaries guarded by a lock, so every pop
hands out a fresh Job object exactly as a remote backend would. Suitable
for tests, single-process deployments and embedding.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from taskline.jobs.connection import Connection
from taskline.jobs.job import Job, utcnow

if TYPE_CHECKING:
    from taskline.jobs.config import QueueConfig
    from taskline.jobs.tasks import WorkItem

logger = logging.getLogger(__name__)


class MemoryConnection(Connection):
    """Thread-safe in-memory storage for one queue."""

    def __init__(self, queue_name: str, config: QueueConfig) -> None:
        self.queue_name = queue_name
        self.config = config
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._jobs: dict[str, dict[str, Any]] = {}
        self._order: dict[str, int] = {}
        self._failed: dict[str, dict[str, Any]] = {}
        self._recurring: dict[str, dict[str, Any]] = {}
        self._unique: dict[str, tuple[str, datetime]] = {}

    # ------------------------------------------------------------------
    # Enqueue / reserve
    # ------------------------------------------------------------------

    def push(
        self,
        work: WorkItem,
        execute_at: datetime | None = None,
        priority: int = 0,
    ) -> str:
        with self._lock:
            now = utcnow()
            unique_key = None

            if self.config.support_unique_jobs and work.unique:
                unique_key = work.get_unique_key()
                existing = self._unique.get(unique_key)
                if existing is not None:
                    existing_id, expires_at = existing
                    if expires_at > now and existing_id in self._jobs:
                        logger.debug(
                            f"Unique job already queued: {existing_id}",
                            extra={"queue": self.queue_name, "unique_key": unique_key},
                        )
                        return existing_id

            job = Job(
                id=str(uuid4()),
                queue=self.queue_name,
                payload=work,
                execute_at=execute_at,
                priority=priority,
            )
            self._jobs[job.id] = job.to_dict()
            self._order[job.id] = next(self._sequence)

            if unique_key is not None:
                expires_at = now + timedelta(seconds=self.config.unique_jobs_expiration)
                self._unique[unique_key] = (job.id, expires_at)

            return job.id

    def _is_available(self, job: Job, now: datetime) -> bool:
        if job.is_completed() or job.has_failed():
            return False
        if job.is_reserved():
            # Reservation abandoned by a crashed or hung worker
            max_time = self.config.max_execution_time
            return max_time > 0 and job.has_timed_out(max_time, now)
        return job.is_executable(now)

    def pop(self) -> Job | None:
        with self._lock:
            now = utcnow()
            candidates = [
                job
                for job in (Job.from_dict(data) for data in self._jobs.values())
                if self._is_available(job, now)
            ]
            if not candidates:
                return None

            job = min(candidates, key=lambda j: (-j.priority, self._order[j.id]))
            if job.is_reserved():
                logger.warning(
                    f"Reclaiming abandoned reservation of job {job.id}",
                    extra={"queue": self.queue_name, "job_id": job.id},
                )

            job.mark_as_reserved()
            self._jobs[job.id] = job.to_dict()
            return job

    def update(self, job: Job) -> None:
        with self._lock:
            if job.id not in self._jobs:
                logger.debug(
                    f"Ignoring update of removed job {job.id}",
                    extra={"queue": self.queue_name, "job_id": job.id},
                )
                return
            self._jobs[job.id] = job.to_dict()

    def remove(self, job_id: str) -> bool:
        with self._lock:
            self._order.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune(self, max_age: int) -> int:
        with self._lock:
            cutoff = utcnow() - timedelta(seconds=max_age)
            expired = []

            for job_id, data in self._jobs.items():
                job = Job.from_dict(data)
                if job.has_failed() and job.failed_at and job.failed_at < cutoff:
                    expired.append(job_id)
                elif (
                    job.is_completed()
                    and job.last_executed_at
                    and job.last_executed_at < cutoff
                ):
                    expired.append(job_id)

            for job_id in expired:
                del self._jobs[job_id]
                self._order.pop(job_id, None)

            stale_failed = [
                job_id
                for job_id, data in self._failed.items()
                if (failed_at := Job.from_dict(data).failed_at) is not None and failed_at < cutoff
            ]
            for job_id in stale_failed:
                del self._failed[job_id]

            self._unique = {
                key: entry for key, entry in self._unique.items() if entry[1] > utcnow()
            }

            return len(expired) + len(stale_failed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._jobs)
            self._jobs.clear()
            self._order.clear()
            self._unique.clear()
            return count

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            now = utcnow()
            stats = {
                "pending": 0,
                "reserved": 0,
                "failed": len(self._failed),
                "delayed": 0,
                "done": 0,
                "recurring": len(self._recurring),
            }

            for data in self._jobs.values():
                job = Job.from_dict(data)
                if job.has_failed():
                    stats["failed"] += 1
                elif job.is_completed():
                    stats["done"] += 1
                elif job.is_reserved():
                    stats["reserved"] += 1
                elif job.is_executable(now):
                    stats["pending"] += 1
                else:
                    stats["delayed"] += 1

            return stats

    # ------------------------------------------------------------------
    # Recurring jobs
    # ------------------------------------------------------------------

    def supports_recurring(self) -> bool:
        return True

    def register_recurring_job(
        self,
        work: WorkItem,
        cron: str,
        priority: int = 0,
        name: str | None = None,
    ) -> str:
        name = name or work.name
        with self._lock:
            for recurring_id, entry in self._recurring.items():
                if entry["name"] == name:
                    entry.update(payload=work.to_dict(), cron=cron, priority=priority)
                    return recurring_id

            recurring_id = str(uuid4())
            self._recurring[recurring_id] = {
                "id": recurring_id,
                "queue": self.queue_name,
                "name": name,
                "payload": work.to_dict(),
                "cron": cron,
                "priority": priority,
                "created_at": utcnow().isoformat(),
            }
            return recurring_id

    def remove_recurring_job(self, recurring_id: str) -> bool:
        with self._lock:
            return self._recurring.pop(recurring_id, None) is not None

    def get_recurring_jobs(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(entry) for entry in self._recurring.values()]

    # ------------------------------------------------------------------
    # Failed jobs
    # ------------------------------------------------------------------

    def has_failed_job_storage(self) -> bool:
        return True

    def store_failed_job(self, job: Job, exception: BaseException) -> None:
        with self._lock:
            self._jobs.pop(job.id, None)
            self._order.pop(job.id, None)
            record = job.to_dict()
            record["exception"] = f"{type(exception).__name__}: {exception}"
            self._failed[job.id] = record

    def get_failed_jobs(self, limit: int = 10, offset: int = 0) -> list[dict[str, Any]]:
        with self._lock:
            records = sorted(
                self._failed.values(),
                key=lambda record: record.get("failed_at") or "",
                reverse=True,
            )
            return [dict(record) for record in records[offset : offset + limit]]

    def retry_failed_job(self, job_id: str) -> bool:
        with self._lock:
            record = self._failed.pop(job_id, None)
            if record is None:
                return False

            failed = Job.from_dict(record)
            job = Job(
                id=failed.id,
                queue=self.queue_name,
                payload=failed.payload,
                priority=failed.priority,
            )
            self._jobs[job.id] = job.to_dict()
            self._order[job.id] = next(self._sequence)
            return True

    def close(self) -> None:
        logger.debug(f"Memory connection closed: {self.queue_name}")


class MemoryConnectionFactory:
    """Creates one in-memory connection per queue name."""

    def create_connection(self, queue_name: str, config: QueueConfig) -> MemoryConnection:
        return MemoryConnection(queue_name, config)
