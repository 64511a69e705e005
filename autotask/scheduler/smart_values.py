"""Smart value parsing.

Pure helpers used by service handlers:
- Relative date expressions ("yesterday", "3 days ago") to datetimes
- Result shape normalization into flat lists
- Content type detection and HTML rendering of normalized lists
"""
import calendar
import re
from datetime import datetime, time, timedelta
from html import escape
from typing import Any
from zoneinfo import ZoneInfo

from .types import ContentType

_AGO_PATTERN = re.compile(r"^(\d+)\s+(day|week|month)s?\s+ago$")

# Checked in order; the first list-valued field wins.
LIST_FIELDS = ("videos", "events", "results", "items", "data", "emails", "messages")


# ============== Relative Dates ==============

def _midnight(day: datetime, tz: ZoneInfo) -> datetime:
    return datetime.combine(day.date(), time(0, 0), tzinfo=tz)


def _months_back(day: datetime, months: int) -> datetime:
    month_index = day.month - 1 - months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def parse_smart_date(
    value: Any,
    timezone: str = "UTC",
    base: datetime | None = None,
) -> datetime | None:
    """Interpret a relative or ISO-8601 date expression.

    Recognizes ``now``, ``today``, ``yesterday``, ``tomorrow``,
    ``last week``, ``last month`` and ``N days/weeks/months ago``
    (case-insensitive). Day-granular expressions resolve to local midnight
    in ``timezone``. Anything else is parsed as ISO-8601; naive ISO values
    are taken to be in ``timezone``.

    Args:
        value: Expression to parse; datetimes are returned unchanged
        timezone: IANA timezone used for local wall-clock arithmetic
        base: Reference instant (defaults to now)

    Returns:
        A timezone-aware datetime, or None if the value is not recognized
    """
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    tz = ZoneInfo(timezone)
    if base is None:
        local = datetime.now(tz)
    elif base.tzinfo is None:
        local = base.replace(tzinfo=tz)
    else:
        local = base.astimezone(tz)

    text = value.strip().lower()

    if text == "now":
        return local
    if text == "today":
        return _midnight(local, tz)
    if text == "yesterday":
        return _midnight(local - timedelta(days=1), tz)
    if text == "tomorrow":
        return _midnight(local + timedelta(days=1), tz)
    if text == "last week":
        return _midnight(local - timedelta(days=7), tz)
    if text == "last month":
        return _midnight(_months_back(local, 1), tz)

    match = _AGO_PATTERN.match(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        if unit == "day":
            return _midnight(local - timedelta(days=amount), tz)
        if unit == "week":
            return _midnight(local - timedelta(weeks=amount), tz)
        return _midnight(_months_back(local, amount), tz)

    iso = value.strip()
    if iso.endswith(("Z", "z")):
        iso = iso[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)


# ============== Shape Normalization ==============

def extract_items(value: Any, _depth: int = 0) -> list[Any]:
    """Normalize a result value into a flat list.

    Lists are returned as-is. Mappings yield the first list-valued field
    among ``LIST_FIELDS``; otherwise a mapping ``content`` field is searched
    once more. Anything else yields an empty list.
    """
    if isinstance(value, list):
        return value
    if not isinstance(value, dict):
        return []

    for name in LIST_FIELDS:
        if isinstance(value.get(name), list):
            return value[name]

    content = value.get("content")
    if _depth == 0 and isinstance(content, dict):
        return extract_items(content, _depth + 1)
    return []


def detect_content_type(items: list[Any]) -> ContentType:
    """Classify a normalized list by the field names of its first element."""
    if not items:
        return ContentType.UNKNOWN

    sample = items[0]
    if not isinstance(sample, dict):
        return ContentType.GENERIC

    url = sample.get("url")
    if "channelTitle" in sample or "viewCount" in sample or (isinstance(url, str) and "youtube" in url):
        return ContentType.VIDEO
    if "start" in sample or ("time" in sample and "location" in sample):
        return ContentType.EVENT
    if "from" in sample or "subject" in sample or "messageId" in sample:
        return ContentType.EMAIL
    if "link" in sample and "snippet" in sample:
        return ContentType.SEARCH_RESULT
    if "title" in sample or "name" in sample:
        return ContentType.GENERIC
    return ContentType.UNKNOWN


# ============== HTML Rendering ==============

def _field(item: Any, *names: str, default: str = "") -> str:
    if not isinstance(item, dict):
        return default
    for name in names:
        if item.get(name):
            return str(item[name])
    return default


def _link(url: str, text: str) -> str:
    return f'<a href="{escape(url)}" target="_blank">{escape(text)}</a>'


def _video_item(index: int, item: Any, include_links: bool) -> str:
    title = _field(item, "title", default="Untitled")
    channel = _field(item, "channelTitle", "channel", default="Unknown channel")
    url = _field(item, "url") or f"https://www.youtube.com/watch?v={_field(item, 'id')}"
    views = _field(item, "viewCount")
    meta = escape(channel) + (f" &middot; {escape(views)} views" if views else "")
    heading = _link(url, title) if include_links else escape(title)
    return f"<li><strong>{index}. {heading}</strong><br><small>{meta}</small></li>"


def _event_item(item: Any) -> str:
    when = _field(item, "time", default="All day")
    title = _field(item, "title", "summary", default="Untitled")
    location = _field(item, "location")
    extra = f"<br><small>{escape(location)}</small>" if location else ""
    return f"<li><strong>{escape(when)}</strong> - {escape(title)}{extra}</li>"


def _email_item(item: Any) -> str:
    subject = _field(item, "subject", default="No subject")
    sender = _field(item, "from", default="Unknown")
    snippet = _field(item, "snippet")
    extra = f"<br><small>{escape(snippet)}</small>" if snippet else ""
    return f"<li><strong>{escape(subject)}</strong> from {escape(sender)}{extra}</li>"


def _search_item(item: Any, include_links: bool) -> str:
    title = _field(item, "title", default="Untitled")
    link = _field(item, "link", "url", default="#")
    snippet = _field(item, "snippet")
    heading = f"<strong>{_link(link, title) if include_links else escape(title)}</strong>"
    extra = f"<br><small>{escape(snippet)}</small>" if snippet else ""
    return f"<li>{heading}{extra}</li>"


def _generic_item(item: Any, include_links: bool) -> str:
    if isinstance(item, dict):
        title = _field(item, "title", "name") or str(item)
        link = _field(item, "link", "url")
    else:
        title, link = str(item), ""
    if include_links and link:
        return f"<li>{_link(link, title)}</li>"
    return f"<li>{escape(title)}</li>"


def auto_format_html(items: list[Any], title: str = "Summary", include_links: bool = True) -> str:
    """Render a normalized list as an HTML section chosen by its content type."""
    if not items:
        return "<p>No items found.</p>"

    content_type = detect_content_type(items)
    if content_type == ContentType.VIDEO:
        rows = [_video_item(i, item, include_links) for i, item in enumerate(items, 1)]
    elif content_type == ContentType.EVENT:
        rows = [_event_item(item) for item in items]
    elif content_type == ContentType.EMAIL:
        rows = [_email_item(item) for item in items]
    elif content_type == ContentType.SEARCH_RESULT:
        rows = [_search_item(item, include_links) for item in items]
    else:
        rows = [_generic_item(item, include_links) for item in items]

    return f"<h2>{escape(title)}</h2>\n<ul>{''.join(rows)}</ul>"
