"""Schedule calculation utilities.

Computes next run times for cron schedules using croniter. Cron fields are
matched against the wall clock of the task's IANA timezone.
"""
import re
import time
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

CRON_FIELD_PATTERN = re.compile(r"^[0-9*,\-/]+$")

# Upper bound on skipped candidates when a wall-clock time does not land
# strictly after now (DST fall-back repeats an hour).
_MAX_CANDIDATES = 8

WEEKDAY_NAMES = {
    "0": "Sunday", "1": "Monday", "2": "Tuesday", "3": "Wednesday",
    "4": "Thursday", "5": "Friday", "6": "Saturday", "7": "Sunday",
}


def now_ms() -> int:
    """Get current timestamp in milliseconds."""
    return int(time.time() * 1000)


def is_valid_timezone(timezone: str) -> bool:
    """Check that the name refers to an IANA timezone."""
    if not timezone:
        return False
    try:
        ZoneInfo(timezone)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def validate_cron_expression(expression: str) -> bool:
    """Validate a cron expression.

    The expression must have exactly 5 whitespace-separated fields
    (minute hour day month weekday) made only of digits, ``*``, ``-``,
    ``/`` and ``,``, and must be accepted by croniter.

    Args:
        expression: Cron expression to validate

    Returns:
        True if valid, False otherwise
    """
    if not isinstance(expression, str):
        return False

    parts = expression.split()
    if len(parts) != 5:
        return False
    if not all(CRON_FIELD_PATTERN.match(part) for part in parts):
        return False

    return croniter.is_valid(expression)


def compute_next_run_at_ms(
    expression: str,
    timezone: str,
    current_ms: int | None = None,
) -> int:
    """Compute the next fire time of a cron expression in a timezone.

    The cron fields are evaluated against the local wall clock of
    ``timezone``; the matching wall-clock moment is then localized with the
    zone's offset at that moment, which keeps DST transitions correct.

    Args:
        expression: 5-field cron expression
        timezone: IANA timezone name
        current_ms: Current timestamp in ms (defaults to now)

    Returns:
        Next run timestamp in milliseconds, strictly after ``current_ms``

    Raises:
        ValueError: If the expression or timezone is invalid
    """
    if not validate_cron_expression(expression):
        raise ValueError(f"Invalid cron expression: {expression!r}")
    if not is_valid_timezone(timezone):
        raise ValueError(f"Invalid timezone: {timezone!r}")

    if current_ms is None:
        current_ms = now_ms()

    tz = ZoneInfo(timezone)
    local_now = datetime.fromtimestamp(current_ms / 1000, tz=tz).replace(tzinfo=None)

    cron = croniter(expression, local_now)
    for _ in range(_MAX_CANDIDATES):
        wall_clock = cron.get_next(datetime)
        candidate_ms = int(wall_clock.replace(tzinfo=tz).timestamp() * 1000)
        if candidate_ms > current_ms:
            return candidate_ms

    raise ValueError(f"Could not compute next run for {expression!r} in {timezone}")


def format_local(timestamp_ms: int | None, timezone: str) -> str | None:
    """Format a timestamp as local wall-clock text in the given timezone."""
    if timestamp_ms is None:
        return None
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=ZoneInfo(timezone))
    return dt.strftime("%Y-%m-%d %H:%M %Z")


def cron_to_human(expression: str, timezone: str = "UTC") -> str:
    """Convert cron expression to a human-readable description.

    Only the shapes produced for recurring tasks (daily, weekdays, a single
    weekday, minute/hour intervals) are described; everything else falls
    back to the raw expression.

    Args:
        expression: 5-field cron expression
        timezone: Timezone appended to the description

    Returns:
        Human-readable description
    """
    parts = expression.split()
    if len(parts) != 5:
        return f"Cron: {expression}"

    minute, hour, day, month, weekday = parts

    if minute.startswith("*/") and hour == "*" and day == "*" and month == "*" and weekday == "*":
        return f"Every {minute[2:]} minutes"

    if hour.startswith("*/") and minute == "0" and day == "*" and month == "*" and weekday == "*":
        return f"Every {hour[2:]} hours"

    if day == "*" and month == "*" and minute.isdigit() and hour.isdigit():
        time_str = f"{int(hour):02d}:{int(minute):02d} ({timezone})"

        if weekday == "*":
            return f"Every day at {time_str}"
        if weekday == "1-5":
            return f"Every weekday at {time_str}"
        if weekday in ("0,6", "6,0"):
            return f"Every weekend at {time_str}"
        if weekday in WEEKDAY_NAMES:
            return f"Every {WEEKDAY_NAMES[weekday]} at {time_str}"
        return f"At {time_str} on weekdays {weekday}"

    return f"Cron: {expression}"
