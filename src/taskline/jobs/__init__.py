"""Background job processing.

Provides a job queue with:
- Named queues with per-queue retry, priority and backend policy
- Pluggable storage backends (in-memory, Redis)
- Retry with fixed, linear or exponential backoff
- Polling workers with job, time and memory limits
- Cron-like recurring scheduling

Example:
    # Compose the queue
    from taskline.jobs import MemoryConnectionFactory, Queue, QueueConfig, TaskRegistry

    registry = TaskRegistry()
    queue = Queue(registry)
    queue.register_queue("default", QueueConfig(MemoryConnectionFactory()))

    # Submit a job
    job_id = queue.push("default", Cleanup(), delay=60)

    # Process jobs with a worker
    from taskline.jobs import Worker

    worker = Worker(queue, {"max_jobs": 100}, queues=["default"])
    worker.run()

    # Schedule recurring jobs
    from taskline.jobs import Scheduler

    scheduler = Scheduler(queue)
    scheduler.schedule_recurring("cleanup", "default", Cleanup(), "0 2 * * *")
    scheduler.run()
"""

from taskline.jobs.backends import (
    MemoryConnection,
    MemoryConnectionFactory,
    RedisConnection,
    RedisConnectionFactory,
)
from taskline.jobs.config import QueueConfig
from taskline.jobs.connection import Connection, ConnectionFactory
from taskline.jobs.cron import (
    CRON_ALIASES,
    SCHEDULE_PRESETS,
    CronExpression,
    is_due,
    is_valid,
    matches_segment,
    next_run_date,
)
from taskline.jobs.exceptions import (
    ConfigurationError,
    CronEvaluationError,
    JobError,
    JobSerializationError,
    JobTimeoutError,
    MaxRetriesExceededError,
    QueueError,
    QueueNotFoundError,
)
from taskline.jobs.job import Job
from taskline.jobs.queue import ProcessOutcome, Queue
from taskline.jobs.retry import DEFAULT_RETRY_BASE_DELAY, RetryStrategy, compute_retry_delay
from taskline.jobs.scheduler import RecurringJob, Scheduler
from taskline.jobs.tasks import TaskRegistry, WorkItem
from taskline.jobs.worker import WORKER_EVENTS, Worker, WorkerConfig

__all__ = [
    # Queue
    "Queue",
    "QueueConfig",
    "ProcessOutcome",
    "Job",
    # Tasks
    "WorkItem",
    "TaskRegistry",
    # Backends
    "Connection",
    "ConnectionFactory",
    "MemoryConnection",
    "MemoryConnectionFactory",
    "RedisConnection",
    "RedisConnectionFactory",
    # Retry
    "RetryStrategy",
    "compute_retry_delay",
    "DEFAULT_RETRY_BASE_DELAY",
    # Worker
    "Worker",
    "WorkerConfig",
    "WORKER_EVENTS",
    # Scheduler
    "Scheduler",
    "RecurringJob",
    "CronExpression",
    "CRON_ALIASES",
    "SCHEDULE_PRESETS",
    "is_due",
    "is_valid",
    "matches_segment",
    "next_run_date",
    # Errors
    "QueueError",
    "QueueNotFoundError",
    "JobError",
    "JobSerializationError",
    "JobTimeoutError",
    "MaxRetriesExceededError",
    "ConfigurationError",
    "CronEvaluationError",
]
