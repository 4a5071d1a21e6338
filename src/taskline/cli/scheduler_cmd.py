"""CLI command for running the recurring job scheduler.

Usage:
    taskline scheduler --app myapp.jobs:scheduler
    taskline scheduler --interval 30
    taskline scheduler --once
"""

from __future__ import annotations

import signal
from types import FrameType

import typer

app = typer.Typer(help="Push recurring jobs when their cron expressions are due")


@app.callback(invoke_without_command=True)
def scheduler(
    app_path: str | None = typer.Option(
        None,
        "--app",
        "-a",
        help="Scheduler as module:attribute (default: TASKLINE_APP)",
    ),
    interval: float | None = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between checks (default: TASKLINE_SCHEDULER_INTERVAL)",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        help="Run due jobs a single time and exit",
    ),
) -> None:
    """Run the scheduler loop, or a single check with --once."""
    from rich.console import Console

    from taskline.cli.loader import load_scheduler

    console = Console()
    job_scheduler = load_scheduler(app_path)

    if once:
        count = job_scheduler.run_due_jobs()
        console.print(f"[green]Pushed {count} recurring jobs[/green]")
        return

    def handler(signum: int, frame: FrameType | None) -> None:
        job_scheduler.stop()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGTERM, signal.SIGINT)}
    console.print(f"[blue]Scheduler running {len(job_scheduler)} recurring jobs[/blue]")

    try:
        job_scheduler.run(interval)
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
        job_scheduler.queue.close_all()
