"""CLI commands for taskline.

Provides command-line interface using Typer:
- taskline worker: Process jobs from queues
- taskline scheduler: Push due recurring jobs
- taskline queue: Inspect and maintain queues
- taskline cron: Validate cron expressions

Usage:
    taskline --help
    taskline worker emails --app myapp.jobs:queue
    taskline scheduler --app myapp.jobs:scheduler
    taskline queue stats emails --app myapp.jobs:queue
    taskline cron next "*/15 * * * *"
"""

import typer

from taskline.cli.cron_cmd import app as cron_app
from taskline.cli.queue_cmd import app as queue_app
from taskline.cli.scheduler_cmd import app as scheduler_app
from taskline.cli.worker_cmd import app as worker_app
from taskline.config import settings
from taskline.observability.logging import configure_logging

# Main CLI application
app = typer.Typer(
    name="taskline",
    help="taskline: background job queue with retries and cron scheduling",
    no_args_is_help=True,
)

# Add subcommands
app.add_typer(worker_app, name="worker")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(queue_app, name="queue")
app.add_typer(cron_app, name="cron")


@app.callback()
def callback(
    log_level: str = typer.Option(
        settings.log_level,
        "--log-level",
        "-l",
        help="Log level: debug, info, warning, error",
    ),
    json_logs: bool = typer.Option(
        settings.log_json,
        "--json/--no-json",
        help="Emit JSON log lines",
    ),
) -> None:
    """taskline: background job queue with retries and cron scheduling."""
    configure_logging(json_format=json_logs, level=log_level)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
