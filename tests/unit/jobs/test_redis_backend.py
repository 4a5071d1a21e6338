"""Tests for the Redis queue backend (against fakeredis)."""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from conftest import Echo

from taskline.jobs import (
    Queue,
    QueueConfig,
    RedisConnection,
    RedisConnectionFactory,
    TaskRegistry,
)
from taskline.jobs.backends.redis import RedisKeys
from taskline.jobs.job import utcnow
from taskline.observability.metrics import MetricsRegistry

pytestmark = pytest.mark.redis


@pytest.fixture
def client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def factory(client: fakeredis.FakeRedis) -> RedisConnectionFactory:
    return RedisConnectionFactory(prefix="test", client=client)


@pytest.fixture
def connection(factory: RedisConnectionFactory) -> RedisConnection:
    return factory.create_connection("default", QueueConfig(factory))


class TestRedisKeys:
    """Tests for the key layout."""

    def test_keys_are_namespaced(self) -> None:
        """Every key lives under prefix and queue."""
        keys = RedisKeys("p", "emails")

        assert keys.job("1") == "p:emails:job:1"
        assert keys.pending == "p:emails:pending"
        assert keys.failed_record("1") == "p:emails:failed:1"
        assert keys.unique("k") == "p:emails:unique:k"
        assert len(keys.state_sets) == 5


class TestRedisPushPop:
    """Tests for enqueue and reservation."""

    def test_push_then_pop(self, connection: RedisConnection, client: fakeredis.FakeRedis) -> None:
        """A pushed job is stored, indexed and reserved by pop."""
        job_id = connection.push(Echo("hi"))

        assert client.exists(connection.keys.job(job_id))
        assert client.zscore(connection.keys.pending, job_id) is not None

        job = connection.pop()

        assert job.id == job_id
        assert job.attempts == 1
        assert job.is_reserved()
        assert job.payload["data"] == {"message": "hi"}
        assert client.zscore(connection.keys.pending, job_id) is None
        assert client.zscore(connection.keys.reserved, job_id) is not None

    def test_pop_empty(self, connection: RedisConnection) -> None:
        """An empty queue yields nothing."""
        assert connection.pop() is None

    def test_priority_then_fifo(self, connection: RedisConnection) -> None:
        """Higher priority first, equal priorities in push order."""
        low = connection.push(Echo("low"), priority=-1)
        first = connection.push(Echo("first"), priority=3)
        second = connection.push(Echo("second"), priority=3)
        normal = connection.push(Echo("normal"))

        popped = [connection.pop().id for _ in range(4)]

        assert popped == [first, second, normal, low]
        assert connection.pop() is None

    def test_delayed_job_promoted_when_due(
        self, connection: RedisConnection, client: fakeredis.FakeRedis
    ) -> None:
        """Delayed jobs move to pending once execute_at has passed."""
        job_id = connection.push(Echo("later"), execute_at=utcnow() + timedelta(minutes=5))

        assert connection.pop() is None
        assert connection.get_stats()["delayed"] == 1

        past = (utcnow() - timedelta(seconds=1)).timestamp()
        client.zadd(connection.keys.delayed, {job_id: past})

        assert connection.pop().id == job_id

    def test_naive_execute_at_is_utc(
        self, connection: RedisConnection, client: fakeredis.FakeRedis
    ) -> None:
        """A naive execution time is taken as UTC."""
        job_id = connection.schedule(Echo("later"), datetime(2030, 1, 1, 9, 0))

        expected = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc).timestamp()
        assert client.zscore(connection.keys.delayed, job_id) == expected

    def test_naive_schedule_through_queue(
        self,
        registry: TaskRegistry,
        metrics: MetricsRegistry,
        factory: RedisConnectionFactory,
    ) -> None:
        """The facade schedules naive past and future times on Redis."""
        queue = Queue(registry, metrics=metrics)
        queue.register_queue("default", QueueConfig(factory))

        later_id = queue.schedule("default", Echo("later"), datetime(2030, 1, 1, 9, 0))
        due_id = queue.schedule("default", Echo("due"), datetime(2020, 1, 1, 9, 0))

        assert queue.pop("default").id == due_id
        assert queue.pop("default") is None
        assert queue.get_stats("default")["queue"]["delayed"] == 1
        assert later_id != due_id

    def test_abandoned_reservation_reclaimed(
        self, connection: RedisConnection, client: fakeredis.FakeRedis
    ) -> None:
        """Reservations older than max_execution_time are popped again."""
        job_id = connection.push(Echo("stuck"))
        connection.pop()
        stale = (utcnow() - timedelta(seconds=600)).timestamp()
        client.zadd(connection.keys.reserved, {job_id: stale})

        reclaimed = connection.pop()

        assert reclaimed.id == job_id
        assert reclaimed.attempts == 2

    def test_stale_index_entry_skipped(
        self, connection: RedisConnection, client: fakeredis.FakeRedis
    ) -> None:
        """An index entry without document is dropped."""
        orphan = connection.push(Echo("orphan"))
        live = connection.push(Echo("live"))
        client.delete(connection.keys.job(orphan))

        assert connection.pop().id == live
        assert client.zscore(connection.keys.pending, orphan) is None


class TestRedisUniqueJobs:
    """Tests for unique job locks."""

    def test_duplicate_returns_existing_id(self, connection: RedisConnection) -> None:
        """A queued unique job swallows duplicates."""
        first = connection.push(Echo("report").make_unique())
        second = connection.push(Echo("report").make_unique())

        assert first == second
        assert connection.get_stats()["pending"] == 1

    def test_lock_expires(self, connection: RedisConnection, client: fakeredis.FakeRedis) -> None:
        """The lock carries the configured expiration."""
        item = Echo("report").make_unique()
        connection.push(item)

        ttl = client.ttl(connection.keys.unique(item.get_unique_key()))

        assert 0 < ttl <= 86400

    def test_removed_job_releases_lock(self, connection: RedisConnection) -> None:
        """A lock pointing to a deleted job is taken over."""
        first = connection.push(Echo("report").make_unique())
        connection.remove(first)

        assert connection.push(Echo("report").make_unique()) != first

    def test_zero_expiration_disables(self, factory: RedisConnectionFactory) -> None:
        """Without an expiration no lock is taken."""
        config = QueueConfig(factory, unique_jobs_expiration=0)
        connection = factory.create_connection("default", config)

        first = connection.push(Echo("report").make_unique())
        second = connection.push(Echo("report").make_unique())

        assert first != second


class TestRedisUpdate:
    """Tests for state transitions."""

    def test_complete_moves_to_done(self, connection: RedisConnection) -> None:
        """Completed jobs are indexed as done."""
        connection.push(Echo("x"))
        job = connection.pop()

        connection.update(job.mark_as_complete())

        stats = connection.get_stats()
        assert stats["done"] == 1
        assert stats["reserved"] == 0

    def test_retry_returns_to_pending(self, connection: RedisConnection) -> None:
        """A job released without delay is popped again."""
        connection.push(Echo("x"))
        job = connection.pop()

        connection.update(job.mark_for_retry(0))

        again = connection.pop()
        assert again.id == job.id
        assert again.attempts == 2

    def test_retry_with_delay_is_delayed(self, connection: RedisConnection) -> None:
        """A job released with a delay waits in the delayed set."""
        connection.push(Echo("x"))
        connection.update(connection.pop().mark_for_retry(60))

        assert connection.get_stats()["delayed"] == 1
        assert connection.pop() is None

    def test_update_removed_job_ignored(self, connection: RedisConnection) -> None:
        """Updating a deleted job does not resurrect it."""
        connection.push(Echo("x"))
        job = connection.pop()
        assert connection.remove(job.id) is True

        connection.update(job.mark_as_complete())

        assert connection.get_stats()["done"] == 0
        assert connection.remove(job.id) is False


class TestRedisMaintenance:
    """Tests for prune, clear and stats."""

    def test_prune(self, connection: RedisConnection, client: fakeredis.FakeRedis) -> None:
        """Finished jobs older than max age are deleted."""
        connection.push(Echo("old"))
        connection.push(Echo("new"))
        old = connection.pop()
        new = connection.pop()
        connection.update(old.mark_as_complete())
        connection.update(new.mark_as_complete())
        stale = (utcnow() - timedelta(hours=2)).timestamp()
        client.zadd(connection.keys.done, {old.id: stale})

        assert connection.prune(3600) == 1
        assert not client.exists(connection.keys.job(old.id))
        assert client.exists(connection.keys.job(new.id))

    def test_clear(self, connection: RedisConnection, client: fakeredis.FakeRedis) -> None:
        """Clear drops jobs, indexes and unique locks."""
        connection.push(Echo("a"))
        connection.push(Echo("b").make_unique())
        connection.push(Echo("c"), execute_at=utcnow() + timedelta(hours=1))

        assert connection.clear() == 3
        assert connection.pop() is None
        assert list(client.scan_iter(match="test:default:*")) == ["test:default:seq"]

    def test_stats(self, connection: RedisConnection) -> None:
        """Stats count jobs by state."""
        connection.push(Echo("a"))
        connection.push(Echo("b"))
        connection.pop()
        connection.register_recurring_job(Echo("tick"), "@hourly")

        assert connection.get_stats() == {
            "pending": 1,
            "reserved": 1,
            "failed": 0,
            "delayed": 0,
            "done": 0,
            "recurring": 1,
        }


class TestRedisRecurring:
    """Tests for recurring registrations."""

    def test_register_list_remove(self, connection: RedisConnection) -> None:
        """Definitions are stored in a hash."""
        recurring_id = connection.register_recurring_job(Echo("tick"), "*/5 * * * *", 2)

        entries = connection.get_recurring_jobs()
        assert [e["id"] for e in entries] == [recurring_id]
        assert entries[0]["priority"] == 2

        assert connection.remove_recurring_job(recurring_id) is True
        assert connection.remove_recurring_job(recurring_id) is False

    def test_reregister_same_name_updates(self, connection: RedisConnection) -> None:
        """The same work item name keeps its id."""
        first = connection.register_recurring_job(Echo("tick"), "@daily")
        second = connection.register_recurring_job(Echo("tick"), "@hourly")

        assert first == second
        assert connection.get_recurring_jobs()[0]["cron"] == "@hourly"

    def test_named_registrations_are_separate(self, connection: RedisConnection) -> None:
        """Explicit names key definitions of the same work class apart."""
        hourly = connection.register_recurring_job(Echo("a"), "@hourly", name="hourly-a")
        daily = connection.register_recurring_job(Echo("b"), "@daily", name="daily-b")

        assert hourly != daily
        assert {e["name"]: e["cron"] for e in connection.get_recurring_jobs()} == {
            "hourly-a": "@hourly",
            "daily-b": "@daily",
        }

        connection.remove_recurring_job(hourly)

        assert [e["id"] for e in connection.get_recurring_jobs()] == [daily]


class TestRedisFailedStorage:
    """Tests for failed job storage."""

    def test_store_list_retry(self, connection: RedisConnection) -> None:
        """Failed jobs are stored, listed and re-enqueued."""
        connection.push(Echo("x"))
        job = connection.pop().mark_as_failed(RuntimeError("kaput"))

        connection.store_failed_job(job, RuntimeError("kaput"))

        records = connection.get_failed_jobs()
        assert [r["id"] for r in records] == [job.id]
        assert records[0]["exception"] == "RuntimeError: kaput"
        assert connection.get_stats()["failed"] == 1

        assert connection.retry_failed_job(job.id) is True
        assert connection.get_failed_jobs() == []

        again = connection.pop()
        assert again.id == job.id
        assert again.attempts == 1

    def test_retry_is_claimed_once(self, connection: RedisConnection) -> None:
        """Only one retry of a failed record re-enqueues it."""
        connection.push(Echo("x"))
        job = connection.pop().mark_as_failed(RuntimeError("kaput"))
        connection.store_failed_job(job, RuntimeError("kaput"))

        assert connection.retry_failed_job(job.id) is True
        assert connection.retry_failed_job(job.id) is False

        stats = connection.get_stats()
        assert stats["pending"] == 1
        assert stats["failed"] == 0

    def test_retry_unknown(self, connection: RedisConnection) -> None:
        """Unknown ids are reported."""
        assert connection.retry_failed_job("missing") is False

    def test_zero_limit(self, connection: RedisConnection) -> None:
        """A zero limit lists nothing."""
        assert connection.get_failed_jobs(limit=0) == []

    def test_prune_failed_storage(
        self, connection: RedisConnection, client: fakeredis.FakeRedis
    ) -> None:
        """Old failed records are deleted by prune."""
        connection.push(Echo("x"))
        job = connection.pop().mark_as_failed(RuntimeError("x"))
        job.failed_at = utcnow() - timedelta(days=2)
        connection.store_failed_job(job, RuntimeError("x"))

        assert connection.prune(3600) == 1
        assert not client.exists(connection.keys.failed_record(job.id))


class TestRedisConnectionFactory:
    """Tests for the connection factory."""

    def test_defaults_from_settings(self) -> None:
        """URL and prefix default to settings."""
        factory = RedisConnectionFactory()

        assert factory.url == "redis://localhost:6379/0"
        assert factory.prefix == "taskline"

    def test_shares_client(self, factory: RedisConnectionFactory) -> None:
        """Connections share the factory's client."""
        config = QueueConfig(factory)

        first = factory.create_connection("a", config)
        second = factory.create_connection("b", config)

        assert first.client is second.client
        assert first.keys.pending == "test:a:pending"

    def test_close_keeps_injected_client(self, factory: RedisConnectionFactory) -> None:
        """An injected client is not closed by the factory."""
        client = factory.client

        factory.close()

        assert factory.client is client
