"""Tests for structured logging."""

import json
import logging
import sys

import pytest

from taskline.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    configure_logging,
    get_logger,
    job_id_var,
    queue_var,
    worker_var,
)


def make_record(message: str = "hello", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="taskline.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:
    """Tests for LogContext."""

    def test_sets_and_resets(self) -> None:
        """Context variables are set inside and restored after."""
        with LogContext(queue="emails", job_id="j1", worker="w1"):
            assert queue_var.get() == "emails"
            assert job_id_var.get() == "j1"
            assert worker_var.get() == "w1"

        assert queue_var.get() == ""
        assert job_id_var.get() == ""
        assert worker_var.get() == ""

    def test_nested(self) -> None:
        """Inner contexts override and restore outer values."""
        with LogContext(queue="outer"):
            with LogContext(queue="inner", job_id="j1"):
                assert queue_var.get() == "inner"
            assert queue_var.get() == "outer"
            assert job_id_var.get() == ""

    def test_ignores_unknown_and_none(self) -> None:
        """Unknown keys and None values are skipped."""
        with LogContext(tenant="t1", queue=None):
            assert queue_var.get() == ""


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_basic_fields(self) -> None:
        """Records render as JSON with standard fields."""
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "taskline.test"
        assert data["message"] == "hello"
        assert data["line"] == 10
        assert "timestamp" in data

    def test_includes_context(self) -> None:
        """Context variables are included."""
        with LogContext(queue="emails", job_id="j1"):
            data = json.loads(JsonFormatter().format(make_record()))

        assert data["queue"] == "emails"
        assert data["job_id"] == "j1"
        assert "worker" not in data

    def test_includes_extra(self) -> None:
        """Extra fields are copied, unserializable ones as strings."""
        data = json.loads(JsonFormatter().format(make_record(attempts=2, blob=object())))

        assert data["attempts"] == 2
        assert data["blob"].startswith("<object")

    def test_exception_info(self) -> None:
        """Exceptions are rendered with type and traceback."""
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "bad"
        assert "Traceback" in data["exception"]["traceback"]


class TestConsoleFormatter:
    """Tests for ConsoleFormatter."""

    def test_plain_line(self) -> None:
        """Lines carry level, logger and message."""
        line = ConsoleFormatter(use_colors=False).format(make_record())

        assert "| INFO     | taskline.test | hello" in line

    def test_context_suffix(self) -> None:
        """Worker, queue and short job id are appended."""
        with LogContext(worker="w1", queue="emails", job_id="0123456789abcdef"):
            line = ConsoleFormatter(use_colors=False).format(make_record())

        assert line.endswith("| worker=w1 queue=emails job=01234567")


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_handler(self) -> None:
        """JSON format installs a single JSON handler."""
        configure_logging(json_format=True, level="debug")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("redis").level == logging.WARNING

    def test_console_handler(self) -> None:
        """Console format installs the console formatter."""
        configure_logging(json_format=False, level="WARNING")

        assert isinstance(logging.getLogger().handlers[0].formatter, ConsoleFormatter)

    def test_get_logger(self) -> None:
        """get_logger returns the named logger."""
        assert get_logger("taskline.jobs") is logging.getLogger("taskline.jobs")
