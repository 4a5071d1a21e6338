"""Background worker for processing queued jobs.

Provides a worker that:
- Polls one or more queues and processes one job per queue per cycle
- Sleeps when no queue yielded work
- Prunes finished jobs periodically
- Stops on job count, wall time or memory limits, or on request
- Emits lifecycle events to registered listeners

Example:
    worker = Worker(queue, WorkerConfig(name="mailer", max_jobs=1000))
    worker.set_queues(["emails", "default"])
    worker.on("job.failed", lambda job: alert(job.id))

    # Run worker (blocks until a stop condition is met)
    worker.run()
"""

from __future__ import annotations

import gc
import logging
import signal
import threading
import time
from dataclasses import dataclass, fields
from datetime import datetime
from types import FrameType
from typing import TYPE_CHECKING, Any, Callable, Mapping

import psutil

from taskline.jobs.exceptions import ConfigurationError, JobTimeoutError
from taskline.jobs.job import utcnow
from taskline.observability.logging import LogContext

if TYPE_CHECKING:
    from taskline.jobs.job import Job
    from taskline.jobs.queue import Queue

logger = logging.getLogger(__name__)

# Lifecycle events a listener can subscribe to
WORKER_EVENTS = (
    "worker.started",
    "job.processing",
    "job.processed",
    "job.failed",
    "job.exception",
    "queue.error",
    "worker.sleep",
    "worker.stopped",
)

# Handled jobs between garbage collection passes
GC_INTERVAL = 100

# Type alias for event listeners
Listener = Callable[..., Any]

# camelCase option names accepted as aliases
_OPTION_ALIASES = {
    "maxJobs": "max_jobs",
    "maxTime": "max_time",
    "maxMemory": "max_memory",
    "memoryLimit": "memory_limit",
    "stopOnException": "stop_on_exception",
    "pruneInterval": "prune_interval",
}


@dataclass
class WorkerConfig:
    """Worker configuration.

    Zero disables a limit.
    """

    # Worker identification
    name: str = "default"

    # Polling
    sleep: float = 3.0

    # Stop conditions
    max_jobs: int = 0
    max_time: int = 0  # seconds
    max_memory: int = 0  # MB of resident memory
    memory_limit: int = 0  # bytes of resident memory

    # Job processing
    timeout: int = 60  # advisory, seconds
    stop_on_exception: bool = False

    # Maintenance
    prune_interval: int = 600  # seconds

    def __post_init__(self) -> None:
        for name in ("sleep", "max_jobs", "max_time", "max_memory", "memory_limit", "timeout"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"Worker option {name} must be >= 0")

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> WorkerConfig:
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        unknown = []

        for key, value in options.items():
            name = _OPTION_ALIASES.get(key, key)
            if name in known:
                values[name] = value
            else:
                unknown.append(key)

        if unknown:
            raise ConfigurationError(f"Unknown worker options: {', '.join(sorted(unknown))}")
        return cls(**values)


class Worker:
    """Polling loop executing jobs from one or more queues.

    Single-threaded: one job runs at a time. Run several workers against
    a shared backend for concurrency.
    """

    def __init__(
        self,
        queue: Queue,
        config: WorkerConfig | Mapping[str, Any] | None = None,
        queues: list[str] | None = None,
    ) -> None:
        self.queue = queue
        if config is None:
            config = WorkerConfig()
        elif not isinstance(config, WorkerConfig):
            config = WorkerConfig.from_mapping(config)
        self.config = config

        self._queues: list[str] = []
        self._listeners: dict[str, list[Listener]] = {}
        self._processed_jobs = 0
        self._failed_jobs = 0
        self._started_at: datetime | None = None
        self._started_monotonic: float | None = None
        self._running = False
        self._stop_requested = False
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()
        self._loop_thread: int | None = None
        self._process = psutil.Process()

        for name in queues or []:
            self.add_queue(name)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_queue(self, name: str) -> Worker:
        if name not in self._queues:
            self._queues.append(name)
        return self

    def set_queues(self, names: list[str]) -> Worker:
        self._queues = []
        for name in names:
            self.add_queue(name)
        return self

    @property
    def queues(self) -> list[str]:
        return list(self._queues)

    def on(self, event: str, callback: Listener) -> Worker:
        """Register a listener for a lifecycle event.

        Listeners run synchronously in the worker loop. An exception raised
        by a listener is logged and never propagates into the loop.

        Raises:
            ConfigurationError: If the event name is unknown
        """
        if event not in WORKER_EVENTS:
            raise ConfigurationError(f"Unknown worker event: {event}")
        self._listeners.setdefault(event, []).append(callback)
        return self

    def _fire(self, event: str, *args: Any) -> None:
        for callback in self._listeners.get(event, []):
            try:
                callback(*args)
            except Exception as e:
                logger.warning(f"Listener for {event} raised: {e}", extra={"event": event})

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def processed_jobs(self) -> int:
        return self._processed_jobs

    @property
    def failed_jobs(self) -> int:
        return self._failed_jobs

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def runtime(self) -> float:
        """Seconds since ``run()`` started (0 before the first run)."""
        if self._started_monotonic is None:
            return 0.0
        return time.monotonic() - self._started_monotonic

    def memory_usage(self) -> int:
        """Resident memory of this process in bytes."""
        return int(self._process.memory_info().rss)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Run the worker until a stop condition is met.

        Main loop: pop and process one job from each queue in turn, sleep
        when none yielded work, prune on schedule.
        """
        if not self._queues:
            logger.warning(f"Worker {self.config.name} has no queues to process")
            return

        self._running = True
        self._processed_jobs = 0
        self._failed_jobs = 0
        self._started_at = utcnow()
        self._started_monotonic = time.monotonic()
        self._loop_thread = threading.get_ident()
        self._wake.clear()
        self._stopped.clear()

        with LogContext(worker=self.config.name):
            logger.info(
                f"Worker started: {self.config.name} on {', '.join(self._queues)}",
                extra={"queues": self._queues},
            )
            self._fire("worker.started", self)

            last_prune = time.monotonic()

            try:
                while not self.should_stop():
                    processed_any = False

                    for name in self._queues:
                        if self.should_stop():
                            break
                        if self._poll(name):
                            processed_any = True

                    interval = self.config.prune_interval
                    if interval > 0 and time.monotonic() - last_prune >= interval:
                        self._prune_queues()
                        last_prune = time.monotonic()

                    if not processed_any and not self.should_stop():
                        self._sleep()
            finally:
                logger.info(
                    f"Worker stopped: {self.config.name} "
                    f"(processed={self._processed_jobs}, failed={self._failed_jobs}, "
                    f"runtime={self.runtime:.1f}s)",
                    extra={
                        "processed_jobs": self._processed_jobs,
                        "failed_jobs": self._failed_jobs,
                    },
                )
                self._running = False
                self._stop_requested = False
                self._loop_thread = None
                self._fire("worker.stopped", self)
                self._stopped.set()

    def _poll(self, name: str) -> bool:
        """Pop and process one job from a queue; True if a job was handled."""
        try:
            job = self.queue.pop(name)
        except Exception as e:
            logger.error(f"Cannot pop from queue '{name}': {e}", extra={"queue": name})
            self._fire("queue.error", e, name)
            if self.config.stop_on_exception:
                self._stop_requested = True
            return False

        if job is None:
            return False

        self.process_job(job)
        return True

    def process_job(self, job: Job) -> bool:
        """Process one job and update the worker counters.

        Returns:
            True if the job completed successfully
        """
        with LogContext(queue=job.queue, job_id=job.id):
            logger.debug(f"Job processing: {job.id}", extra={"attempts": job.attempts})
            self._fire("job.processing", job)

            if not job.is_reserved():
                job.mark_as_reserved()

            started = time.perf_counter()
            memory_before = self.memory_usage()

            try:
                outcome = self.queue.process(job)
            except Exception as e:
                self._failed_jobs += 1
                logger.error(f"Unexpected error processing job {job.id}: {e}")
                self.queue.fail(job, e)
                self._fire("job.exception", job, e)
                if self.config.stop_on_exception:
                    self._stop_requested = True
                self._after_job()
                return False

            elapsed = time.perf_counter() - started
            memory_delta = self.memory_usage() - memory_before
            self._check_timeout(job, elapsed)

            if outcome:
                self._processed_jobs += 1
                logger.info(
                    f"Job processed: {job.id} in {elapsed * 1000:.2f}ms",
                    extra={"time_ms": round(elapsed * 1000, 2), "memory_delta": memory_delta},
                )
                self._fire("job.processed", job)
            else:
                self._failed_jobs += 1
                logger.warning(
                    f"Job processed with error: {job.id} ({outcome.value})",
                    extra={"time_ms": round(elapsed * 1000, 2), "memory_delta": memory_delta},
                )
                self._fire("job.failed", job)

            self._after_job()
            return bool(outcome)

    def _check_timeout(self, job: Job, elapsed: float) -> None:
        if self.config.timeout <= 0:
            return
        limit = job.effective_timeout(self.config.timeout)
        if elapsed > limit:
            error = JobTimeoutError(
                f"Job {job.id} ran {elapsed:.1f}s, exceeding its {limit}s timeout",
                queue_name=job.queue,
                job_id=job.id,
            )
            logger.warning(str(error), extra={"timeout": limit})

    def _after_job(self) -> None:
        handled = self._processed_jobs + self._failed_jobs
        if handled % GC_INTERVAL == 0:
            self._collect_garbage()

    def _collect_garbage(self) -> None:
        before = self.memory_usage()
        collected = gc.collect()
        freed = before - self.memory_usage()
        logger.debug(f"Garbage collected: {collected} objects, {max(freed, 0)} bytes freed")

    def _prune_queues(self) -> None:
        for name in self._queues:
            try:
                if not self.queue.config_for(name).auto_prune:
                    continue
                self.queue.prune(name)
            except Exception as e:
                logger.error(f"Cannot prune queue '{name}': {e}", extra={"queue": name})

    def _sleep(self) -> None:
        seconds = self.config.sleep
        if seconds <= 0:
            return
        self._fire("worker.sleep", seconds)
        # Returns early when stop() is requested
        self._wake.wait(seconds)

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    def should_stop(self) -> bool:
        """Evaluate stop conditions in order; the first match wins."""
        if self._stop_requested:
            return True

        max_jobs = self.config.max_jobs
        if max_jobs > 0 and self._processed_jobs + self._failed_jobs >= max_jobs:
            logger.info(f"Worker reached max jobs ({max_jobs})")
            return True

        max_time = self.config.max_time
        if max_time > 0 and self.runtime >= max_time:
            logger.info(f"Worker reached max time ({max_time}s)")
            return True

        if self.config.max_memory > 0 or self.config.memory_limit > 0:
            usage = self.memory_usage()
            max_memory = self.config.max_memory
            if max_memory > 0 and usage / 1024 / 1024 >= max_memory:
                logger.warning(
                    f"Worker reached max memory: {usage / 1024 / 1024:.2f} MB >= {max_memory} MB"
                )
                return True
            limit = self.config.memory_limit
            if limit > 0 and usage >= limit:
                logger.warning(f"Worker reached memory limit: {usage} >= {limit} bytes")
                return True

        return False

    def stop(self, wait: bool = True) -> None:
        """Request the loop to stop after the current job.

        Args:
            wait: Block until the loop has exited (ignored when called
                from the loop's own thread, e.g. by a listener)
        """
        logger.info(f"Stopping worker: {self.config.name}")
        self._stop_requested = True
        self._wake.set()

        if wait and self._running and threading.get_ident() != self._loop_thread:
            self._stopped.wait()

    def install_signal_handlers(self) -> dict[int, Any]:
        """Stop gracefully on SIGINT and SIGTERM (main thread only).

        Returns:
            The previous handlers, keyed by signal number
        """

        def handler(signum: int, frame: FrameType | None) -> None:
            logger.info(f"Received shutdown signal {signal.Signals(signum).name}")
            self.stop(wait=False)

        previous = {}
        for sig in (signal.SIGTERM, signal.SIGINT):
            previous[sig] = signal.signal(sig, handler)
        return previous
