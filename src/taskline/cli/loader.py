"""Locate the composition root named by ``--app``.

The application module builds its Queue (and optionally a Scheduler)
at import time or through a factory function:

    # myapp/jobs.py
    queue = Queue(registry)
    queue.register_queue("emails", QueueConfig(RedisConnectionFactory()))

    $ taskline worker emails --app myapp.jobs:queue
"""

from __future__ import annotations

import importlib
from typing import Any

import typer

from taskline.config import settings
from taskline.jobs.queue import Queue
from taskline.jobs.scheduler import Scheduler


def load_object(path: str | None) -> Any:
    """Import ``module:attribute`` and return the attribute.

    A callable attribute that is not itself a Queue or Scheduler is
    treated as a factory and called without arguments.
    """
    path = path or settings.app
    if not path:
        raise typer.BadParameter(
            "No application given: pass --app module:attribute or set TASKLINE_APP"
        )

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(f"Expected 'module:attribute', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import module '{module_name}': {e}") from e

    obj: Any = module
    try:
        for part in attribute.split("."):
            obj = getattr(obj, part)
    except AttributeError as e:
        raise typer.BadParameter(f"Module '{module_name}' has no attribute '{attribute}'") from e

    if callable(obj) and not isinstance(obj, (Queue, Scheduler)):
        obj = obj()
    return obj


def load_queue(path: str | None) -> Queue:
    """Resolve the application to a Queue (a Scheduler yields its queue)."""
    obj = load_object(path)
    if isinstance(obj, Scheduler):
        return obj.queue
    if not isinstance(obj, Queue):
        raise typer.BadParameter(f"Application object is a {type(obj).__name__}, not a Queue")
    return obj


def load_scheduler(path: str | None) -> Scheduler:
    obj = load_object(path)
    if not isinstance(obj, Scheduler):
        raise typer.BadParameter(
            f"Application object is a {type(obj).__name__}, not a Scheduler"
        )
    return obj
