"""Tests for cron expression evaluation."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from taskline.jobs.cron import (
    SCHEDULE_PRESETS,
    CronExpression,
    expand,
    is_due,
    is_valid,
    matches_segment,
    next_run_date,
)
from taskline.jobs.exceptions import CronEvaluationError, QueueError


class TestIsValid:
    """Tests for expression validation."""

    @pytest.mark.parametrize(
        "expression",
        [
            "* * * * *",
            "*/15 * * * *",
            "0 2 * * *",
            "0 9 * * 1-5",
            "0,30 8-18 * * *",
            "5/10 * * * *",
            "0 0 1 jan *",
            "0 9 * * mon-fri",
            "@hourly",
            "@DAILY",
            "  0 0 * * 0  ",
        ],
    )
    def test_valid_expressions(self, expression: str) -> None:
        """Well-formed expressions are accepted."""
        assert is_valid(expression) is True

    @pytest.mark.parametrize(
        "expression",
        [
            "61 * * * *",
            "* 24 * * *",
            "* * 0 * *",
            "* * * 13 *",
            "* * * * 7",
            "* * * *",
            "* * * * * *",
            "",
            "@fortnightly",
            "*/0 * * * *",
            "30-10 * * * *",
            "a * * * *",
            "1,,2 * * * *",
        ],
    )
    def test_invalid_expressions(self, expression: str) -> None:
        """Malformed expressions are rejected."""
        assert is_valid(expression) is False

    def test_non_string_is_invalid(self) -> None:
        """Non-string input never raises."""
        assert is_valid(None) is False  # type: ignore[arg-type]
        assert is_valid(15) is False  # type: ignore[arg-type]

    def test_expand_alias_and_names(self) -> None:
        """Aliases expand and names become numbers."""
        assert expand("@daily") == ["0", "0", "*", "*", "*"]
        assert expand("0 9 * jan,feb mon-fri") == ["0", "9", "*", "1,2", "1-5"]
        assert expand("* * *") is None


class TestMatchesSegment:
    """Tests for single-field matching."""

    def test_wildcard(self) -> None:
        """A wildcard matches anything."""
        assert matches_segment(42, "*", 0, 59)

    def test_exact_value(self) -> None:
        """A number matches only itself."""
        assert matches_segment(5, "5", 0, 59)
        assert not matches_segment(6, "5", 0, 59)

    def test_list(self) -> None:
        """Comma lists match any member."""
        assert matches_segment(3, "1,3,5", 0, 59)
        assert not matches_segment(4, "1,3,5", 0, 59)

    def test_range(self) -> None:
        """Ranges are inclusive."""
        assert matches_segment(10, "10-20", 0, 59)
        assert matches_segment(20, "10-20", 0, 59)
        assert not matches_segment(21, "10-20", 0, 59)

    def test_step_from_minimum(self) -> None:
        """Wildcard steps start at the field minimum."""
        assert matches_segment(45, "*/15", 0, 59)
        assert not matches_segment(7, "*/15", 0, 59)
        # Day of month starts at 1
        assert matches_segment(3, "*/2", 1, 31)
        assert not matches_segment(2, "*/2", 1, 31)

    def test_step_within_range(self) -> None:
        """Stepped ranges stay within their bounds."""
        assert matches_segment(15, "10-20/5", 0, 59)
        assert not matches_segment(25, "10-20/5", 0, 59)

    def test_step_from_start(self) -> None:
        """n/s steps run from n to the field maximum."""
        assert matches_segment(5, "5/15", 0, 59)
        assert matches_segment(50, "5/15", 0, 59)
        assert not matches_segment(0, "5/15", 0, 59)


class TestNextRunDate:
    """Tests for next run computation."""

    def test_every_fifteen_minutes(self) -> None:
        """*/15 from 12:07 fires at 12:15."""
        start = datetime(2024, 1, 1, 12, 7, tzinfo=timezone.utc)

        assert next_run_date("*/15 * * * *", start) == datetime(
            2024, 1, 1, 12, 15, tzinfo=timezone.utc
        )

    def test_strictly_after_start(self) -> None:
        """A matching start time is never returned."""
        start = datetime(2024, 1, 1, 12, 15, 30, tzinfo=timezone.utc)

        assert next_run_date("*/15 * * * *", start) == datetime(
            2024, 1, 1, 12, 30, tzinfo=timezone.utc
        )

    def test_rolls_over_day_month_and_year(self) -> None:
        """Search crosses calendar boundaries."""
        start = datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)

        assert next_run_date("@daily", start) == datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert next_run_date("0 0 1 jun *", start) == datetime(
            2025, 6, 1, 0, 0, tzinfo=timezone.utc
        )

    def test_weekday_name(self) -> None:
        """Weekday names are honored."""
        sunday = datetime(2024, 1, 7, 10, 0, tzinfo=timezone.utc)

        assert next_run_date("0 9 * * mon", sunday) == datetime(
            2024, 1, 8, 9, 0, tzinfo=timezone.utc
        )

    def test_day_of_month_and_weekday_both_match(self) -> None:
        """Both day fields must match (Friday the 13th)."""
        start = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)

        assert next_run_date("0 0 13 * 5", start) == datetime(
            2024, 9, 13, 0, 0, tzinfo=timezone.utc
        )

    def test_naive_datetime_stays_naive(self) -> None:
        """Naive inputs give naive results."""
        result = next_run_date("0 * * * *", datetime(2024, 6, 1, 10, 15))

        assert result == datetime(2024, 6, 1, 11, 0)
        assert result.tzinfo is None

    def test_keeps_timezone(self) -> None:
        """Aware inputs keep their zone."""
        berlin = ZoneInfo("Europe/Berlin")
        result = next_run_date("0 9 * * *", datetime(2024, 6, 1, 10, 0, tzinfo=berlin))

        assert result == datetime(2024, 6, 2, 9, 0, tzinfo=berlin)
        assert result.tzinfo is berlin

    def test_spring_forward_skips_missing_hour(self) -> None:
        """A wall time removed by DST moves to the next day."""
        berlin = ZoneInfo("Europe/Berlin")
        start = datetime(2024, 3, 31, 1, 0, tzinfo=berlin)

        result = next_run_date("30 2 * * *", start)

        assert result == datetime(2024, 4, 1, 2, 30, tzinfo=berlin)
        assert result.utcoffset() == timedelta(hours=2)

    def test_fall_back_fires_once_after_repeated_hour(self) -> None:
        """The hour after a fall-back is reached once, in winter time."""
        berlin = ZoneInfo("Europe/Berlin")
        start = datetime(2024, 10, 27, 2, 10, tzinfo=berlin)
        assert start.utcoffset() == timedelta(hours=2)

        result = next_run_date("0 3 * * *", start)

        assert result.astimezone(timezone.utc) == datetime(2024, 10, 27, 2, 0, tzinfo=timezone.utc)
        assert result.utcoffset() == timedelta(hours=1)

    def test_fall_back_fixed_hour_fires_once(self) -> None:
        """A fixed hour inside the repeated hour fires on its first pass only."""
        berlin = ZoneInfo("Europe/Berlin")
        start = datetime(2024, 10, 27, 2, 10, tzinfo=berlin)

        first = next_run_date("15 2 * * *", start)
        second = next_run_date("15 2 * * *", first)

        assert first.astimezone(timezone.utc) == datetime(2024, 10, 27, 0, 15, tzinfo=timezone.utc)
        assert second == datetime(2024, 10, 28, 2, 15, tzinfo=berlin)

    def test_fall_back_wildcard_hour_follows_real_time(self) -> None:
        """Wildcard-hour schedules keep firing through the repeated hour."""
        berlin = ZoneInfo("Europe/Berlin")
        start = datetime(2024, 10, 27, 2, 50, tzinfo=berlin)

        result = next_run_date("*/15 * * * *", start)

        assert result.astimezone(timezone.utc) == datetime(2024, 10, 27, 1, 0, tzinfo=timezone.utc)
        assert result.utcoffset() == timedelta(hours=1)

    def test_invalid_expression_raises(self) -> None:
        """Malformed expressions raise CronEvaluationError."""
        with pytest.raises(CronEvaluationError):
            next_run_date("61 * * * *", datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_impossible_date_raises(self) -> None:
        """An expression that never fires exhausts the search."""
        with pytest.raises(CronEvaluationError, match="exhausted"):
            next_run_date("0 0 30 2 *", datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_error_is_value_error_and_queue_error(self) -> None:
        """CronEvaluationError fits both hierarchies."""
        assert issubclass(CronEvaluationError, ValueError)
        assert issubclass(CronEvaluationError, QueueError)


class TestIsDue:
    """Tests for due checks."""

    def test_hourly_due_after_full_hour(self) -> None:
        """@hourly is due once the next full hour has passed."""
        last_run = datetime(2024, 1, 1, 12, 7, tzinfo=timezone.utc)
        before = datetime(2024, 1, 1, 12, 59, tzinfo=timezone.utc)
        after = datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)

        assert is_due("@hourly", last_run, before) is False
        assert is_due("@hourly", last_run, after) is True

    def test_invalid_expression_never_due(self) -> None:
        """Malformed expressions are never due."""
        last_run = datetime(2020, 1, 1, tzinfo=timezone.utc)

        assert is_due("61 * * * *", last_run) is False

    def test_defaults_to_now(self) -> None:
        """Without ``now`` the current time is used."""
        assert is_due("* * * * *", datetime(2020, 1, 1, tzinfo=timezone.utc)) is True


class TestCronExpression:
    """Tests for CronExpression class."""

    def test_every_minute(self) -> None:
        """* * * * * matches every minute."""
        cron = CronExpression("* * * * *")
        dt = datetime(2024, 1, 15, 10, 30)

        assert cron.matches(dt) is True

    def test_specific_minute(self) -> None:
        """Specific minute matches only that minute."""
        cron = CronExpression("30 * * * *")

        assert cron.matches(datetime(2024, 1, 15, 10, 30)) is True
        assert cron.matches(datetime(2024, 1, 15, 10, 31)) is False

    def test_weekday_field(self) -> None:
        """Weekday 0 is Sunday."""
        cron = CronExpression("0 0 * * 0")

        assert cron.matches(datetime(2024, 1, 14, 0, 0)) is True  # Sunday
        assert cron.matches(datetime(2024, 1, 15, 0, 0)) is False  # Monday

    def test_next_run_daily(self) -> None:
        """Next run of a daily job is the next day."""
        cron = CronExpression("0 2 * * *")

        assert cron.next_run(datetime(2024, 1, 15, 2, 0)) == datetime(2024, 1, 16, 2, 0)

    def test_next_run_defaults_to_now(self) -> None:
        """Next run without argument is in the future."""
        cron = CronExpression("* * * * *")

        assert cron.next_run() > datetime.now(timezone.utc)

    def test_is_due(self) -> None:
        """is_due mirrors the module function."""
        cron = CronExpression("0 * * * *")
        last_run = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

        assert cron.is_due(last_run, datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)) is False
        assert cron.is_due(last_run, datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)) is True

    def test_invalid_expression(self) -> None:
        """Invalid expressions raise ValueError."""
        with pytest.raises(ValueError):
            CronExpression("not a cron")

    def test_repr(self) -> None:
        """repr shows the expression."""
        assert repr(CronExpression("@daily")) == "CronExpression('@daily')"


class TestSchedulePresets:
    """Tests for schedule presets."""

    def test_presets_are_valid(self) -> None:
        """Every preset parses."""
        for expression in SCHEDULE_PRESETS.values():
            assert is_valid(expression)

    def test_every_minute_preset(self) -> None:
        """every_minute preset is correct."""
        assert SCHEDULE_PRESETS["every_minute"] == "* * * * *"
