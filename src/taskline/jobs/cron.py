"""Cron expression evaluation.

Supports the standard 5-field format:
- minute (0-59)
- hour (0-23)
- day of month (1-31)
- month (1-12 or jan-dec)
- day of week (0-6 or sun-sat, 0=Sunday)

Special characters:
- * : any value
- */n : every n values
- n-m : range from n to m
- n-m/s : every s values within n to m
- n/s : every s values starting at n
- n,m : specific values n and m

Aliases such as ``@daily`` and ``@hourly`` are expanded before parsing.
Day of month and day of week must both match for a time to fire.

Example:
    is_valid("*/15 * * * *")            # True
    next_run_date("@hourly", last_run)  # next full hour after last_run
    is_due("0 2 * * *", last_run)       # True once 2 AM has passed
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from taskline.jobs.exceptions import CronEvaluationError

CRON_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
    "@minutely": "* * * * *",
}

MONTH_NAMES = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

WEEKDAY_NAMES = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}

# (name, minimum, maximum) in field order
FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)

# Upper bound on search steps; impossible dates such as Feb 30 exhaust it
MAX_ITERATIONS = 50_000

_NAME_RE = re.compile(r"[A-Za-z]+")
_PART_RE = re.compile(r"^(\*|\d+(?:-\d+)?)(?:/(\d+))?$")


def _substitute_names(field: str, names: dict[str, int]) -> str:
    """Replace 3-letter month/weekday names with their numbers."""
    return _NAME_RE.sub(
        lambda match: str(names.get(match.group(0).lower(), match.group(0))),
        field,
    )


def expand(expression: str) -> list[str] | None:
    """Split an expression into its 5 raw fields.

    Aliases are expanded and names substituted. Returns None when the
    expression does not have exactly 5 fields.
    """
    expression = expression.strip()
    expression = CRON_ALIASES.get(expression.lower(), expression)

    fields = expression.split()
    if len(fields) != 5:
        return None

    fields[3] = _substitute_names(fields[3], MONTH_NAMES)
    fields[4] = _substitute_names(fields[4], WEEKDAY_NAMES)
    return fields


def _is_valid_field(field: str, minimum: int, maximum: int) -> bool:
    for part in field.split(","):
        match = _PART_RE.match(part)
        if match is None:
            return False

        base, step = match.groups()
        if step is not None and int(step) < 1:
            return False

        if base == "*":
            continue
        if "-" in base:
            start, end = (int(value) for value in base.split("-"))
            if not minimum <= start <= end <= maximum:
                return False
        elif not minimum <= int(base) <= maximum:
            return False

    return True


def is_valid(expression: str) -> bool:
    """Check whether an expression is a well-formed 5-field cron string.

    Never raises.
    """
    if not isinstance(expression, str):
        return False

    fields = expand(expression)
    if fields is None:
        return False

    return all(
        _is_valid_field(field, minimum, maximum)
        for field, (_, minimum, maximum) in zip(fields, FIELDS)
    )


def matches_segment(value: int, segment: str, minimum: int, maximum: int) -> bool:
    """Check whether a single field value matches a cron segment.

    Args:
        value: Field value of the candidate time
        segment: Cron segment (e.g. "*/5", "1-5", "0,30")
        minimum: Smallest legal value of the field
        maximum: Largest legal value of the field
    """
    if segment == "*":
        return True

    if "," in segment:
        return any(
            matches_segment(value, part, minimum, maximum) for part in segment.split(",")
        )

    if "/" in segment:
        range_part, _, step_part = segment.partition("/")
        step = int(step_part)
        if step <= 0:
            return False

        if range_part == "*":
            start, end = minimum, maximum
        elif "-" in range_part:
            start, end = (int(v) for v in range_part.split("-"))
        else:
            start, end = int(range_part), maximum

        return start <= value <= end and (value - start) % step == 0

    if "-" in segment:
        start, end = (int(v) for v in segment.split("-"))
        return start <= value <= end

    return value == int(segment)


def _cron_weekday(dt: datetime) -> int:
    """Cron weekday of a datetime (0=Sunday)."""
    return dt.isoweekday() % 7


def _matches_fields(dt: datetime, fields: list[str]) -> bool:
    minute, hour, day, month, weekday = fields
    return (
        matches_segment(dt.minute, minute, 0, 59)
        and matches_segment(dt.hour, hour, 0, 23)
        and matches_segment(dt.day, day, 1, 31)
        and matches_segment(dt.month, month, 1, 12)
        and matches_segment(_cron_weekday(dt), weekday, 0, 6)
    )


def _normalize(dt: datetime) -> datetime:
    """Resolve wall-clock times that DST shifted or skipped."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).astimezone(dt.tzinfo)


def _is_repeated_wall_time(dt: datetime) -> bool:
    """Second occurrence of a wall-clock time repeated by a DST fall-back."""
    if dt.tzinfo is None or not dt.fold:
        return False
    return dt.replace(fold=0).utcoffset() != dt.utcoffset()


def _add_minute(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt + timedelta(minutes=1)
    return (dt.astimezone(timezone.utc) + timedelta(minutes=1)).astimezone(dt.tzinfo)


def _parse_or_raise(expression: str) -> list[str]:
    fields = expand(expression) if isinstance(expression, str) else None
    if fields is None or not is_valid(expression):
        raise CronEvaluationError(f"Invalid cron expression: {expression!r}")
    return fields


def _next_match(fields: list[str], start: datetime, expression: str) -> datetime:
    minute, hour, day, month, weekday = fields
    current = start

    try:
        for _ in range(MAX_ITERATIONS):
            if not matches_segment(current.month, month, 1, 12):
                if current.month == 12:
                    current = current.replace(
                        year=current.year + 1, month=1, day=1, hour=0, minute=0
                    )
                else:
                    current = current.replace(month=current.month + 1, day=1, hour=0, minute=0)
                current = _normalize(current)
                continue

            if not (
                matches_segment(current.day, day, 1, 31)
                and matches_segment(_cron_weekday(current), weekday, 0, 6)
            ):
                current = _normalize(current.replace(hour=0, minute=0) + timedelta(days=1))
                continue

            if not matches_segment(current.hour, hour, 0, 23):
                current = _normalize(current.replace(minute=0) + timedelta(hours=1))
                continue

            if not matches_segment(current.minute, minute, 0, 59):
                current = _add_minute(current)
                continue

            # Fixed-hour schedules fire once in a repeated (fall-back) hour
            if hour != "*" and _is_repeated_wall_time(current):
                current = _add_minute(current)
                continue

            return current
    except OverflowError as e:
        raise CronEvaluationError(
            f"Cron evaluation exhausted for {expression!r}: date range overflow"
        ) from e

    raise CronEvaluationError(
        f"Cron evaluation exhausted for {expression!r} after {MAX_ITERATIONS} steps"
    )


def next_run_date(expression: str, from_: datetime) -> datetime:
    """Compute the first time strictly after ``from_`` that matches.

    The search starts one minute after ``from_`` with seconds truncated.
    Timezone-aware datetimes keep their zone.

    Raises:
        CronEvaluationError: If the expression is malformed or never fires
    """
    fields = _parse_or_raise(expression)
    start = _add_minute(from_.replace(second=0, microsecond=0))
    return _next_match(fields, start, expression)


def is_due(expression: str, last_run: datetime, now: datetime | None = None) -> bool:
    """Check whether a job that last ran at ``last_run`` should run again.

    Malformed expressions are never due.
    """
    if not is_valid(expression):
        return False

    if now is None:
        now = datetime.now(last_run.tzinfo)

    return next_run_date(expression, last_run) <= now


class CronExpression:
    """A parsed cron expression.

    Example:
        cron = CronExpression("0 2 * * *")
        cron.matches(datetime(2024, 1, 15, 2, 0))  # True
        cron.next_run(datetime(2024, 1, 15, 2, 0))  # 2024-01-16 02:00
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self.fields = _parse_or_raise(expression)

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches this cron expression."""
        return _matches_fields(dt, self.fields)

    def next_run(self, after: datetime | None = None) -> datetime:
        """Calculate next run time after given datetime."""
        if after is None:
            after = datetime.now(timezone.utc)
        start = _add_minute(after.replace(second=0, microsecond=0))
        return _next_match(self.fields, start, self.expression)

    def is_due(self, last_run: datetime, now: datetime | None = None) -> bool:
        if now is None:
            now = datetime.now(last_run.tzinfo)
        return self.next_run(last_run) <= now

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"


# Common schedule presets
SCHEDULE_PRESETS = {
    "every_minute": "* * * * *",
    "every_5_minutes": "*/5 * * * *",
    "every_15_minutes": "*/15 * * * *",
    "every_hour": "0 * * * *",
    "daily_midnight": "0 0 * * *",
    "daily_2am": "0 2 * * *",
    "weekly_sunday": "0 0 * * 0",
    "weekly_monday": "0 0 * * 1",
    "monthly_first": "0 0 1 * *",
}
