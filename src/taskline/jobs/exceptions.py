"""Exception taxonomy for the job queue.

Every error raised across the Queue facade is a QueueError. Backend
specific exceptions are chained as ``__cause__`` and never leak.

    QueueError
    ├── QueueNotFoundError
    ├── JobError
    │   └── JobSerializationError
    ├── JobTimeoutError
    ├── MaxRetriesExceededError
    ├── ConfigurationError
    └── CronEvaluationError (also a ValueError)
"""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base error for queue operations.

    Carries the queue name, the facade operation and the job id where
    they are known, so log handlers and callers can report context.
    """

    def __init__(
        self,
        message: str,
        *,
        queue_name: str | None = None,
        operation: str | None = None,
        job_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.queue_name = queue_name
        self.operation = operation
        self.job_id = job_id


class QueueNotFoundError(QueueError):
    """Operation addressed a queue that was never registered."""

    def __init__(self, queue_name: str, operation: str | None = None) -> None:
        super().__init__(
            f"Queue '{queue_name}' not found",
            queue_name=queue_name,
            operation=operation,
        )


class JobError(QueueError):
    """A job payload could not be loaded or executed."""


class JobSerializationError(JobError):
    """A job or its payload could not be (de)serialized."""


class JobTimeoutError(QueueError):
    """A reservation exceeded the allowed execution time."""


class MaxRetriesExceededError(QueueError):
    """The retry budget of a job is exhausted."""


class ConfigurationError(QueueError):
    """Invalid queue, worker or connection configuration."""


class CronEvaluationError(QueueError, ValueError):
    """A cron expression is malformed or never fires."""
