"""Redis-backed queue storage.

Key layout for queue ``q`` under prefix ``p``:

    p:q:job:{id}        job document (orjson)
    p:q:pending         ZSET, score = -priority * PRIORITY_WEIGHT + sequence
    p:q:delayed         ZSET, score = execute_at timestamp
    p:q:reserved        ZSET, score = reserved_at timestamp
    p:q:done            ZSET, score = completion timestamp
    p:q:failed          ZSET, failed jobs kept in the main table
    p:q:failed_jobs     ZSET index of failed job storage, score = failed_at
    p:q:failed:{id}     failed job record (orjson)
    p:q:recurring       HASH recurring id -> definition (orjson)
    p:q:unique:{key}    unique job lock holding the job id (SET NX EX)
    p:q:seq             insertion counter

Reservation uses WATCH/MULTI on the pending set: if another worker claims
the head first the transaction is retried, so each job is handed out once.

Example:
    factory = RedisConnectionFactory("redis://localhost:6379/0")
    queue.register_queue("emails", QueueConfig(factory))
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import orjson
import redis
from redis.exceptions import WatchError

from taskline.config import settings
from taskline.jobs.connection import Connection
from taskline.jobs.job import Job, utcnow

if TYPE_CHECKING:
    from taskline.jobs.config import QueueConfig
    from taskline.jobs.tasks import WorkItem

logger = logging.getLogger(__name__)

# Pending score weight per priority step; the sequence must stay below it
PRIORITY_WEIGHT = 10**9

# Attempts before a contended reservation gives up for this poll
MAX_WATCH_RETRIES = 25


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisKeys:
    """Key generator for one queue."""

    def __init__(self, prefix: str, queue_name: str) -> None:
        self.base = f"{prefix}:{queue_name}"

    def job(self, job_id: str) -> str:
        return f"{self.base}:job:{job_id}"

    def failed_record(self, job_id: str) -> str:
        return f"{self.base}:failed:{job_id}"

    def unique(self, unique_key: str) -> str:
        return f"{self.base}:unique:{unique_key}"

    @property
    def pending(self) -> str:
        return f"{self.base}:pending"

    @property
    def delayed(self) -> str:
        return f"{self.base}:delayed"

    @property
    def reserved(self) -> str:
        return f"{self.base}:reserved"

    @property
    def done(self) -> str:
        return f"{self.base}:done"

    @property
    def failed(self) -> str:
        return f"{self.base}:failed"

    @property
    def failed_index(self) -> str:
        return f"{self.base}:failed_jobs"

    @property
    def recurring(self) -> str:
        return f"{self.base}:recurring"

    @property
    def sequence(self) -> str:
        return f"{self.base}:seq"

    @property
    def state_sets(self) -> tuple[str, ...]:
        return (self.pending, self.delayed, self.reserved, self.done, self.failed)


class RedisConnection(Connection):
    """Queue storage in Redis.

    Args:
        queue_name: Queue this connection stores
        config: Policy of the queue
        client: Synchronous redis client
        prefix: Namespace of every key
    """

    def __init__(
        self,
        queue_name: str,
        config: QueueConfig,
        client: redis.Redis,
        prefix: str = "taskline",
    ) -> None:
        self.queue_name = queue_name
        self.config = config
        self.client = client
        self.keys = RedisKeys(prefix, queue_name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, raw: bytes | str | None) -> Job | None:
        if raw is None:
            return None
        return Job.from_dict(orjson.loads(raw))

    def _get_job(self, job_id: str) -> Job | None:
        return self._load(self.client.get(self.keys.job(job_id)))

    def _pending_score(self, priority: int) -> float:
        sequence = int(self.client.incr(self.keys.sequence))
        return float(-priority * PRIORITY_WEIGHT + sequence)

    def _save(self, job: Job) -> None:
        """Write the job document and file it under its state set."""
        now = utcnow()
        pending_score = None
        if not (job.is_completed() or job.has_failed() or job.is_reserved()):
            if job.execute_at is None or job.execute_at <= now:
                pending_score = self._pending_score(job.priority)

        with self.client.pipeline() as pipe:
            pipe.set(self.keys.job(job.id), orjson.dumps(job.to_dict()))
            for key in self.keys.state_sets:
                pipe.zrem(key, job.id)

            if job.has_failed():
                pipe.zadd(self.keys.failed, {job.id: job.failed_at.timestamp()})
            elif job.is_completed():
                pipe.zadd(self.keys.done, {job.id: job.completed_at.timestamp()})
            elif job.is_reserved():
                pipe.zadd(self.keys.reserved, {job.id: job.reserved_at.timestamp()})
            elif pending_score is not None:
                pipe.zadd(self.keys.pending, {job.id: pending_score})
            else:
                pipe.zadd(self.keys.delayed, {job.id: job.execute_at.timestamp()})

            pipe.execute()

    def _promote_due(self, now: datetime) -> None:
        """Move up to ``batch_size`` due delayed jobs into the pending set."""
        due = self.client.zrangebyscore(
            self.keys.delayed, "-inf", now.timestamp(), start=0, num=self.config.batch_size
        )
        for value in due:
            job_id = _text(value)
            # ZREM is atomic, only one worker promotes a given job
            if not self.client.zrem(self.keys.delayed, job_id):
                continue
            job = self._get_job(job_id)
            if job is None:
                continue
            self.client.zadd(self.keys.pending, {job_id: self._pending_score(job.priority)})

    def _recover_abandoned(self, now: datetime) -> None:
        """Requeue reservations older than the queue's max execution time."""
        max_time = self.config.max_execution_time
        if max_time <= 0:
            return

        cutoff = (now - timedelta(seconds=max_time)).timestamp()
        for value in self.client.zrangebyscore(self.keys.reserved, "-inf", f"({cutoff}"):
            job_id = _text(value)
            if not self.client.zrem(self.keys.reserved, job_id):
                continue
            job = self._get_job(job_id)
            if job is None:
                continue
            logger.warning(
                f"Reclaiming abandoned reservation of job {job_id}",
                extra={"queue": self.queue_name, "job_id": job_id},
            )
            self.client.zadd(self.keys.pending, {job_id: self._pending_score(job.priority)})

    # ------------------------------------------------------------------
    # Enqueue / reserve
    # ------------------------------------------------------------------

    def push(
        self,
        work: WorkItem,
        execute_at: datetime | None = None,
        priority: int = 0,
    ) -> str:
        job = Job(
            id=str(uuid4()),
            queue=self.queue_name,
            payload=work,
            execute_at=execute_at,
            priority=priority,
        )

        expiration = self.config.unique_jobs_expiration
        if self.config.support_unique_jobs and work.unique and expiration > 0:
            lock_key = self.keys.unique(work.get_unique_key())
            if not self.client.set(lock_key, job.id, nx=True, ex=expiration):
                existing = self.client.get(lock_key)
                if existing is not None and self.client.exists(self.keys.job(_text(existing))):
                    existing_id = _text(existing)
                    logger.debug(
                        f"Unique job already queued: {existing_id}",
                        extra={"queue": self.queue_name, "unique_key": lock_key},
                    )
                    return existing_id
                self.client.set(lock_key, job.id, ex=expiration)

        self._save(job)
        return job.id

    def pop(self) -> Job | None:
        now = utcnow()
        self._recover_abandoned(now)
        self._promote_due(now)

        with self.client.pipeline() as pipe:
            for _ in range(MAX_WATCH_RETRIES):
                try:
                    pipe.watch(self.keys.pending)
                    head = pipe.zrange(self.keys.pending, 0, 0)
                    if not head:
                        pipe.unwatch()
                        return None

                    job_id = _text(head[0])
                    job = self._load(pipe.get(self.keys.job(job_id)))

                    pipe.multi()
                    pipe.zrem(self.keys.pending, job_id)
                    if job is not None:
                        job.mark_as_reserved()
                        pipe.set(self.keys.job(job_id), orjson.dumps(job.to_dict()))
                        pipe.zadd(self.keys.reserved, {job_id: job.reserved_at.timestamp()})
                    pipe.execute()
                except WatchError:
                    continue

                if job is not None:
                    return job
                # Document vanished under a stale index entry; try the next one

        logger.warning(
            f"Reservation contention on queue {self.queue_name}, giving up this poll",
            extra={"queue": self.queue_name},
        )
        return None

    def update(self, job: Job) -> None:
        if not self.client.exists(self.keys.job(job.id)):
            logger.debug(
                f"Ignoring update of removed job {job.id}",
                extra={"queue": self.queue_name, "job_id": job.id},
            )
            return
        self._save(job)

    def remove(self, job_id: str) -> bool:
        with self.client.pipeline() as pipe:
            pipe.delete(self.keys.job(job_id))
            for key in self.keys.state_sets:
                pipe.zrem(key, job_id)
            deleted, *_ = pipe.execute()
        return bool(deleted)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _prune_set(self, index: str, cutoff: float, record_key: Any) -> int:
        ids = [_text(v) for v in self.client.zrangebyscore(index, "-inf", f"({cutoff}")]
        if not ids:
            return 0
        with self.client.pipeline() as pipe:
            pipe.delete(*(record_key(job_id) for job_id in ids))
            pipe.zrem(index, *ids)
            pipe.execute()
        return len(ids)

    def prune(self, max_age: int) -> int:
        cutoff = (utcnow() - timedelta(seconds=max_age)).timestamp()
        count = self._prune_set(self.keys.done, cutoff, self.keys.job)
        count += self._prune_set(self.keys.failed, cutoff, self.keys.job)
        count += self._prune_set(self.keys.failed_index, cutoff, self.keys.failed_record)
        return count

    def clear(self) -> int:
        ids: set[str] = set()
        for key in self.keys.state_sets:
            ids.update(_text(v) for v in self.client.zrange(key, 0, -1))

        unique_locks = list(self.client.scan_iter(match=self.keys.unique("*")))

        with self.client.pipeline() as pipe:
            if ids:
                pipe.delete(*(self.keys.job(job_id) for job_id in ids))
            if unique_locks:
                pipe.delete(*unique_locks)
            pipe.delete(*self.keys.state_sets)
            pipe.execute()

        return len(ids)

    def get_stats(self) -> dict[str, int]:
        with self.client.pipeline(transaction=False) as pipe:
            pipe.zcard(self.keys.pending)
            pipe.zcard(self.keys.reserved)
            pipe.zcard(self.keys.failed)
            pipe.zcard(self.keys.failed_index)
            pipe.zcard(self.keys.delayed)
            pipe.zcard(self.keys.done)
            pipe.hlen(self.keys.recurring)
            pending, reserved, failed, stored, delayed, done, recurring = pipe.execute()

        return {
            "pending": pending,
            "reserved": reserved,
            "failed": failed + stored,
            "delayed": delayed,
            "done": done,
            "recurring": recurring,
        }

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
        entries = self.client.hgetall(self.keys.recurring)
        for key, raw in entries.items():
            entry = orjson.loads(raw)
            if entry["name"] == name:
                entry.update(payload=work.to_dict(), cron=cron, priority=priority)
                self.client.hset(self.keys.recurring, key, orjson.dumps(entry))
                return _text(key)

        recurring_id = str(uuid4())
        entry = {
            "id": recurring_id,
            "queue": self.queue_name,
            "name": name,
            "payload": work.to_dict(),
            "cron": cron,
            "priority": priority,
            "created_at": utcnow().isoformat(),
        }
        self.client.hset(self.keys.recurring, recurring_id, orjson.dumps(entry))
        return recurring_id

    def remove_recurring_job(self, recurring_id: str) -> bool:
        return bool(self.client.hdel(self.keys.recurring, recurring_id))

    def get_recurring_jobs(self) -> list[dict[str, Any]]:
        return [orjson.loads(raw) for raw in self.client.hvals(self.keys.recurring)]

    # ------------------------------------------------------------------
    # Failed jobs
    # ------------------------------------------------------------------

    def has_failed_job_storage(self) -> bool:
        return True

    def store_failed_job(self, job: Job, exception: BaseException) -> None:
        record = job.to_dict()
        record["exception"] = f"{type(exception).__name__}: {exception}"
        failed_at = job.failed_at or utcnow()

        with self.client.pipeline() as pipe:
            pipe.delete(self.keys.job(job.id))
            for key in self.keys.state_sets:
                pipe.zrem(key, job.id)
            pipe.set(self.keys.failed_record(job.id), orjson.dumps(record))
            pipe.zadd(self.keys.failed_index, {job.id: failed_at.timestamp()})
            pipe.execute()

    def get_failed_jobs(self, limit: int = 10, offset: int = 0) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        ids = [
            _text(v)
            for v in self.client.zrevrange(self.keys.failed_index, offset, offset + limit - 1)
        ]
        if not ids:
            return []
        records = self.client.mget([self.keys.failed_record(job_id) for job_id in ids])
        return [orjson.loads(raw) for raw in records if raw is not None]

    def retry_failed_job(self, job_id: str) -> bool:
        key = self.keys.failed_record(job_id)

        # Only the caller whose DEL removed the record re-enqueues it
        with self.client.pipeline() as pipe:
            pipe.get(key)
            pipe.delete(key)
            pipe.zrem(self.keys.failed_index, job_id)
            raw, deleted, _ = pipe.execute()

        if raw is None or not deleted:
            return False

        failed = Job.from_dict(orjson.loads(raw))
        job = Job(
            id=failed.id,
            queue=self.queue_name,
            payload=failed.payload,
            priority=failed.priority,
        )
        self._save(job)
        return True

    def close(self) -> None:
        logger.debug(f"Redis connection released: {self.queue_name}")


class RedisConnectionFactory:
    """Creates Redis connections sharing one client (and connection pool).

    Args:
        url: Redis URL (defaults to ``settings.redis_url``)
        prefix: Key namespace (defaults to ``settings.redis_prefix``)
        client: Pre-built client, e.g. a ``fakeredis.FakeRedis`` in tests
    """

    def __init__(
        self,
        url: str | None = None,
        prefix: str | None = None,
        client: redis.Redis | None = None,
    ) -> None:
        self.url = url or settings.redis_url
        self.prefix = prefix or settings.redis_prefix
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self.url)
            logger.info(f"Redis client created for {self.url}")
        return self._client

    def create_connection(self, queue_name: str, config: QueueConfig) -> RedisConnection:
        return RedisConnection(queue_name, config, self.client, prefix=self.prefix)

    def close(self) -> None:
        """Close the shared client if this factory created it."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
