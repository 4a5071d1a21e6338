"""CLI commands for inspecting and maintaining queues.

Usage:
    taskline queue stats emails --app myapp.jobs:queue
    taskline queue failed emails --limit 20
    taskline queue retry emails 7c1f0a2b-...
    taskline queue prune emails --max-age 86400
    taskline queue clear emails --yes
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich.console import Console
from rich.table import Table

from taskline.cli.loader import load_queue
from taskline.jobs.exceptions import QueueError

app = typer.Typer(help="Inspect and maintain queues", no_args_is_help=True)

console = Console()

APP_OPTION = typer.Option(
    None,
    "--app",
    "-a",
    help="Composition root as module:attribute (default: TASKLINE_APP)",
)


@contextmanager
def _reporting_errors() -> Iterator[None]:
    try:
        yield
    except QueueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e


@app.command()
def stats(
    queue_name: str = typer.Argument(..., help="Queue name"),
    app_path: str | None = APP_OPTION,
) -> None:
    """Show job counts of a queue."""
    queue = load_queue(app_path)

    with _reporting_errors():
        data = queue.get_stats(queue_name)

    counts = data.get("queue", {})
    if "error" in counts:
        console.print(f"[red]Stats unavailable:[/red] {counts['error']}")
        raise typer.Exit(code=1)

    table = Table(title=f"Queue: {queue_name}")
    table.add_column("State", style="cyan")
    table.add_column("Jobs", justify="right")
    for state in ("pending", "delayed", "reserved", "done", "failed"):
        table.add_row(state, str(counts.get(state, 0)))
    console.print(table)


@app.command()
def failed(
    queue_name: str = typer.Argument(..., help="Queue name"),
    limit: int = typer.Option(10, "--limit", "-l", help="Maximum jobs to list"),
    offset: int = typer.Option(0, "--offset", "-o", help="Jobs to skip"),
    app_path: str | None = APP_OPTION,
) -> None:
    """List failed jobs, newest first."""
    queue = load_queue(app_path)

    with _reporting_errors():
        jobs = queue.get_failed_jobs(queue_name, limit, offset)

    if not jobs:
        console.print("[green]No failed jobs[/green]")
        return

    table = Table(title=f"Failed jobs: {queue_name}")
    table.add_column("ID", style="cyan")
    table.add_column("Task")
    table.add_column("Attempts", justify="right")
    table.add_column("Failed at")
    table.add_column("Error", style="red")

    for job in jobs:
        payload = job.get("payload") or {}
        table.add_row(
            str(job.get("id")),
            str(payload.get("class") or payload.get("kind") or "unknown"),
            str(job.get("attempts", 0)),
            str(job.get("failed_at") or "-"),
            str(job.get("exception") or job.get("error_message") or ""),
        )
    console.print(table)


@app.command()
def retry(
    queue_name: str = typer.Argument(..., help="Queue name"),
    job_id: str = typer.Argument(..., help="ID of the failed job"),
    app_path: str | None = APP_OPTION,
) -> None:
    """Re-enqueue a failed job."""
    queue = load_queue(app_path)

    with _reporting_errors():
        retried = queue.retry(queue_name, job_id)

    if not retried:
        console.print(f"[yellow]Failed job not found:[/yellow] {job_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Re-enqueued:[/green] {job_id}")


@app.command()
def prune(
    queue_name: str = typer.Argument(..., help="Queue name"),
    max_age: int | None = typer.Option(
        None,
        "--max-age",
        help="Age in seconds (default: the queue's max_age)",
    ),
    app_path: str | None = APP_OPTION,
) -> None:
    """Delete finished jobs older than max age."""
    queue = load_queue(app_path)

    with _reporting_errors():
        count = queue.prune(queue_name, max_age)

    console.print(f"[green]Pruned {count} jobs[/green]")


@app.command()
def clear(
    queue_name: str = typer.Argument(..., help="Queue name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    app_path: str | None = APP_OPTION,
) -> None:
    """Delete every job of a queue."""
    queue = load_queue(app_path)

    if not yes:
        typer.confirm(f"Delete all jobs of queue '{queue_name}'?", abort=True)

    with _reporting_errors():
        count = queue.clear(queue_name)

    console.print(f"[yellow]Cleared {count} jobs[/yellow]")
