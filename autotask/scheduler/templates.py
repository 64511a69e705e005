"""Template resolution for step parameters.

Step parameters may reference values from the run context with
``{{name}}`` placeholders. The context starts with a fixed set of
date/time keys computed once per run in the task's timezone; each step
with an output binding adds one more key after it succeeds.
"""
import json
import re
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

RESERVED_CONTEXT_KEYS = frozenset({
    "date",
    "today_long",
    "today_short",
    "today",
    "time",
    "weekday",
    "month",
    "year",
    "yesterday_date",
    "yesterday_short",
    "yesterday",
})


def _long_date(dt: datetime) -> str:
    # Monday, October 19, 2026
    return f"{dt:%A}, {dt:%B} {dt.day}, {dt.year}"


def _short_date(dt: datetime) -> str:
    # Oct 19, 2026
    return f"{dt:%b} {dt.day}, {dt.year}"


def _numeric_date(dt: datetime) -> str:
    # 10/19/2026
    return f"{dt.month}/{dt.day}/{dt.year}"


def _clock_time(dt: datetime) -> str:
    # 7:05 AM
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{hour}:{dt.minute:02d} {suffix}"


def build_run_context(timezone: str, now: datetime | None = None) -> dict[str, Any]:
    """Build the reserved date/time keys for one run.

    Args:
        timezone: IANA timezone of the task
        now: Reference instant (defaults to the current time)

    Returns:
        A fresh context dict holding only the reserved keys
    """
    tz = ZoneInfo(timezone)
    local = now.astimezone(tz) if now else datetime.now(tz)
    yesterday = local - timedelta(days=1)

    return {
        "date": _long_date(local),
        "today_long": _long_date(local),
        "today_short": _short_date(local),
        "today": _numeric_date(local),
        "time": _clock_time(local),
        "weekday": f"{local:%A}",
        "month": f"{local:%B}",
        "year": local.year,
        "yesterday_date": _long_date(yesterday),
        "yesterday_short": _short_date(yesterday),
        "yesterday": _numeric_date(yesterday),
    }


def stringify(value: Any) -> str:
    """Render a context value for substitution into a string."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and "content" in value:
        return str(value["content"])
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    return str(value)


def resolve_string(text: str, context: dict[str, Any]) -> str:
    """Substitute every ``{{name}}`` in a string; unknown names are kept."""
    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in context:
            return match.group(0)
        return stringify(context[name])

    return PLACEHOLDER_PATTERN.sub(replace, text)


def _expand_list(values: list[Any], context: dict[str, Any]) -> list[Any]:
    expanded = []
    for item in values:
        if isinstance(item, str) and item in context and item not in RESERVED_CONTEXT_KEYS:
            expanded.append(context[item])
        else:
            expanded.append(item)
    return expanded


def resolve_parameters(parameters: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Resolve placeholders in a step's parameters.

    String values get ``{{name}}`` substitution. Lists whose string
    elements name a bound (non-reserved) context key have those elements
    replaced by the bound value. Everything else passes through unchanged.
    The input mapping is not mutated.

    Args:
        parameters: Raw step parameters
        context: Run context

    Returns:
        A new parameter dict
    """
    resolved: dict[str, Any] = {}
    for key, value in parameters.items():
        if isinstance(value, str):
            resolved[key] = resolve_string(value, context)
        elif isinstance(value, list):
            resolved[key] = _expand_list(value, context)
        else:
            resolved[key] = value
    return resolved


def find_references(parameters: dict[str, Any]) -> set[str]:
    """Names a step's parameters refer to.

    Covers ``{{name}}`` placeholders in strings at any depth and bare
    names listed inside arrays.
    """
    names: set[str] = set()

    def visit(value: Any, in_list: bool = False) -> None:
        if isinstance(value, str):
            names.update(PLACEHOLDER_PATTERN.findall(value))
            if in_list and value.isidentifier():
                names.add(value)
        elif isinstance(value, dict):
            for item in value.values():
                visit(item)
        elif isinstance(value, list):
            for item in value:
                visit(item, in_list=True)

    visit(parameters)
    return names
