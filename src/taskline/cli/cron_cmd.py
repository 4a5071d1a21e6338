"""CLI commands for checking cron expressions.

Usage:
    taskline cron validate "*/15 * * * *"
    taskline cron next "@daily" --count 3
    taskline cron next "0 9 * * mon" --from 2026-01-05T08:00:00+00:00
"""

from __future__ import annotations

from datetime import datetime

import typer

from taskline.jobs.cron import expand, is_valid, next_run_date
from taskline.jobs.exceptions import CronEvaluationError
from taskline.jobs.job import utcnow

app = typer.Typer(help="Validate cron expressions and preview run times", no_args_is_help=True)


@app.command()
def validate(
    expression: str = typer.Argument(..., help="Cron expression or alias"),
) -> None:
    """Check a cron expression; exits with 1 when invalid."""
    if not is_valid(expression):
        typer.echo(f"Invalid: {expression}")
        raise typer.Exit(code=1)

    fields = expand(expression) or []
    typer.echo(f"Valid: {' '.join(fields)}")


@app.command("next")
def next_runs(
    expression: str = typer.Argument(..., help="Cron expression or alias"),
    count: int = typer.Option(5, "--count", "-c", min=1, help="Number of run times"),
    start: str | None = typer.Option(
        None,
        "--from",
        help="ISO-8601 start time (default: now, UTC)",
    ),
) -> None:
    """Print the next run times of a cron expression."""
    if start is None:
        current = utcnow()
    else:
        try:
            current = datetime.fromisoformat(start)
        except ValueError as e:
            raise typer.BadParameter(f"Invalid ISO-8601 time: {start}") from e

    try:
        for _ in range(count):
            current = next_run_date(expression, current)
            typer.echo(current.isoformat())
    except CronEvaluationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e
