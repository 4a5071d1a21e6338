"""CLI command for running a worker.

Usage:
    taskline worker emails --app myapp.jobs:queue
    taskline worker emails default --max-jobs 1000 --max-memory 256
    taskline worker default --sleep 1 --stop-on-exception
"""

from __future__ import annotations

import signal

import typer

from taskline.config import settings
from taskline.jobs.worker import Worker, WorkerConfig

app = typer.Typer(
    help="Process jobs from one or more queues",
    # Options may follow the queue names
    context_settings={"allow_interspersed_args": True},
)


@app.callback(invoke_without_command=True)
def worker(
    queues: list[str] = typer.Argument(
        ...,
        help="Queues to process, polled in the given order",
    ),
    app_path: str | None = typer.Option(
        None,
        "--app",
        "-a",
        help="Composition root as module:attribute (default: TASKLINE_APP)",
    ),
    name: str | None = typer.Option(
        None,
        "--name",
        "-n",
        help="Worker name used in logs (default: instance id)",
    ),
    sleep: float = typer.Option(
        settings.worker_sleep,
        "--sleep",
        help="Seconds to wait when no queue has work",
    ),
    max_jobs: int = typer.Option(
        0,
        "--max-jobs",
        help="Stop after handling this many jobs (0 = unlimited)",
    ),
    max_time: int = typer.Option(
        0,
        "--max-time",
        help="Stop after this many seconds (0 = unlimited)",
    ),
    max_memory: int = typer.Option(
        0,
        "--max-memory",
        help="Stop when resident memory reaches this many MB (0 = unlimited)",
    ),
    timeout: int = typer.Option(
        settings.worker_timeout,
        "--timeout",
        help="Seconds after which a running job is reported as timed out",
    ),
    prune_interval: int = typer.Option(
        settings.worker_prune_interval,
        "--prune-interval",
        help="Seconds between pruning sweeps (0 = never)",
    ),
    stop_on_exception: bool = typer.Option(
        False,
        "--stop-on-exception",
        help="Stop on unexpected errors instead of continuing",
    ),
) -> None:
    """Run a worker until a limit is reached or SIGINT/SIGTERM arrives."""
    from rich.console import Console

    from taskline.cli.loader import load_queue

    console = Console()
    queue = load_queue(app_path)

    unknown = [q for q in queues if not queue.has_queue(q)]
    if unknown:
        console.print(f"[red]Unknown queues:[/red] {', '.join(unknown)}")
        raise typer.Exit(code=2)

    config = WorkerConfig(
        name=name or f"worker-{settings.instance_id}",
        sleep=sleep,
        max_jobs=max_jobs,
        max_time=max_time,
        max_memory=max_memory,
        timeout=timeout,
        prune_interval=prune_interval,
        stop_on_exception=stop_on_exception,
    )
    job_worker = Worker(queue, config, queues=queues)

    console.print(f"[blue]Worker {config.name} processing:[/blue] {', '.join(queues)}")

    previous = job_worker.install_signal_handlers()
    try:
        job_worker.run()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        queue.close_all()

    console.print(
        f"[green]Processed {job_worker.processed_jobs} jobs[/green], "
        f"{job_worker.failed_jobs} failed in {job_worker.runtime:.1f}s"
    )
