"""Service handlers.

Adapt ``(operation, parameters)`` step calls to capability-shaped client
protocols. Concrete calendar, mail, search and video connectors live
outside this package; they only need to implement the protocols below.
Every client method receives the task owner's identity first.
"""
import json
from datetime import datetime, timedelta
from typing import Any, Protocol

from loguru import logger

from ..scheduler.errors import StepError
from ..scheduler.executor import RunScope, StepCallable
from ..scheduler.smart_values import (
    auto_format_html,
    detect_content_type,
    extract_items,
    parse_smart_date,
)
from .llm import LLMError, LLMProvider, parse_json_answer

logger = logger.bind(module="services.handlers")


# ============== Client Protocols ==============

class CalendarClient(Protocol):
    async def list_events(
        self,
        owner: str,
        time_min: datetime | None,
        time_max: datetime | None,
        max_results: int,
        timezone: str,
    ) -> list[dict[str, Any]]:
        ...

    async def get_today_events(self, owner: str, timezone: str) -> list[dict[str, Any]]:
        ...


class MailClient(Protocol):
    async def send_html(
        self,
        owner: str,
        to: list[str],
        subject: str,
        html: str,
        sender: str | None = None,
    ) -> dict[str, Any]:
        """Send an HTML email and return provider metadata (e.g. message id)."""
        ...


class SearchClient(Protocol):
    async def search(
        self, owner: str, query: str, limit: int, date_restrict: str | None = None
    ) -> list[dict[str, Any]]:
        ...

    async def trending(self, owner: str, keywords: list[str], limit: int) -> list[dict[str, Any]]:
        ...

    async def quotes(self, owner: str, limit: int, category: str) -> list[dict[str, Any]]:
        ...

    async def hacker_news_top(self, owner: str, limit: int) -> list[dict[str, Any]]:
        ...

    async def fetch_content(
        self, owner: str, urls: list[str], timeout_seconds: float
    ) -> list[dict[str, Any]]:
        ...


class VideoClient(Protocol):
    async def search(
        self,
        owner: str,
        query: str,
        max_results: int,
        order: str,
        published_after: datetime | None,
        region_code: str | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def trending(self, owner: str, max_results: int, region_code: str) -> list[dict[str, Any]]:
        ...

    async def create_playlist(
        self,
        owner: str,
        title: str,
        description: str,
        privacy_status: str,
        video_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        ...


# ============== Handler Base ==============

def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [value]


class BaseHandler:
    """Maps operation names of one service to bound coroutine methods.

    Subclasses list their operations in ``operations``; each name maps to
    a method ``op_<name>(params, scope)``.
    """

    service: str = ""
    operations: tuple[str, ...] = ()

    def resolve(self, operation: str) -> StepCallable | None:
        if operation not in self.operations:
            return None
        return getattr(self, f"op_{operation}", None)


# ============== Calendar ==============

class CalendarHandler(BaseHandler):
    service = "calendar"
    operations = ("list_events", "get_today")

    def __init__(self, client: CalendarClient):
        self.client = client

    def _window(self, params: dict[str, Any], scope: RunScope) -> tuple[datetime, datetime]:
        tz = params.get("timeZone") or params.get("timezone") or scope.timezone
        start_of_day = parse_smart_date("today", tz)

        time_min = parse_smart_date(params.get("timeMin"), tz) or start_of_day

        raw_max = params.get("timeMax")
        if raw_max in ("end_of_day", "today"):
            time_max = start_of_day + timedelta(days=1)
        elif raw_max in ("tomorrow", "today+24h"):
            time_max = start_of_day + timedelta(days=2)
        else:
            time_max = parse_smart_date(raw_max, tz) or time_min + timedelta(days=1)
        return time_min, time_max

    async def op_list_events(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        timezone = params.get("timeZone") or params.get("timezone") or scope.timezone
        time_min, time_max = self._window(params, scope)
        events = await self.client.list_events(
            scope.owner,
            time_min=time_min,
            time_max=time_max,
            max_results=_as_int(params.get("maxResults"), 250),
            timezone=timezone,
        )
        return {"events": events, "count": len(events)}

    async def op_get_today(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        events = await self.client.get_today_events(scope.owner, scope.timezone)
        return {"events": events, "count": len(events)}


# ============== Mail ==============

class GmailHandler(BaseHandler):
    service = "gmail"
    operations = ("send",)

    def __init__(self, client: MailClient, default_sender: str | None = None):
        self.client = client
        self.default_sender = default_sender

    async def op_send(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        recipients = [str(r) for r in _as_list(params.get("to"))] or [scope.owner]
        subject = str(params.get("subject") or "Automated Task Result")
        html = params.get("html") or params.get("body") or ""
        if not isinstance(html, str):
            html = json.dumps(html, indent=2, ensure_ascii=False, default=str)

        meta = await self.client.send_html(
            scope.owner,
            to=recipients,
            subject=subject,
            html=html,
            sender=params.get("from") or self.default_sender,
        )
        logger.info(f"Sent '{subject}' to {', '.join(recipients)}")
        return {
            "sent": True,
            "to": recipients,
            "subject": subject,
            "message_id": (meta or {}).get("id"),
        }


# ============== Search ==============

class SearchHandler(BaseHandler):
    service = "search"
    operations = ("search", "web_search", "trending", "quotes", "hacker_news_top", "fetch_content")

    def __init__(self, client: SearchClient):
        self.client = client

    async def op_search(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        query = str(params.get("query") or "").strip()
        if not query:
            raise StepError("search requires a non-empty query")
        results = await self.client.search(
            scope.owner,
            query=query,
            limit=_as_int(params.get("limit"), 10),
            date_restrict=params.get("dateRestrict"),
        )
        return {"results": results}

    async def op_web_search(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        return await self.op_search(params, scope)

    async def op_trending(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        keywords = _as_list(params.get("keywords")) or scope.task.personalization.keywords or ["AI", "technology"]
        results = await self.client.trending(
            scope.owner, keywords=[str(k) for k in keywords], limit=_as_int(params.get("limit"), 10)
        )
        return {"results": results}

    async def op_quotes(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        quotes = await self.client.quotes(
            scope.owner,
            limit=_as_int(params.get("limit"), 1),
            category=str(params.get("category") or "inspirational"),
        )
        return {"quotes": quotes}

    async def op_hacker_news_top(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        stories = await self.client.hacker_news_top(scope.owner, limit=_as_int(params.get("limit"), 10))
        fields = _as_list(params.get("includeFields"))
        if fields:
            stories = [{k: v for k, v in s.items() if k in fields} for s in stories]
        return {"results": stories}

    async def op_fetch_content(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        urls: list[str] = []
        for entry in _as_list(params.get("items")):
            for item in extract_items(entry) or [entry]:
                if isinstance(item, str) and item.startswith(("http://", "https://")):
                    urls.append(item)
                elif isinstance(item, dict) and (item.get("link") or item.get("url")):
                    urls.append(str(item.get("link") or item.get("url")))

        if not urls:
            raise StepError("fetch_content found no URLs in its items")

        pages = await self.client.fetch_content(
            scope.owner, urls=urls, timeout_seconds=float(params.get("timeoutSec") or 15)
        )
        return {"items": pages}


# ============== Video ==============

class YouTubeHandler(BaseHandler):
    service = "youtube"
    operations = ("search", "trending", "create_playlist", "search_and_create_playlist")

    def __init__(self, client: VideoClient):
        self.client = client

    async def op_search(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        videos = await self.client.search(
            scope.owner,
            query=str(params.get("query") or ""),
            max_results=_as_int(params.get("maxResults") or params.get("limit"), 10),
            order=str(params.get("order") or "relevance"),
            published_after=parse_smart_date(params.get("publishedAfter"), scope.timezone),
            region_code=params.get("regionCode"),
        )
        return {"videos": videos}

    async def op_trending(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        videos = await self.client.trending(
            scope.owner,
            max_results=_as_int(params.get("maxResults") or params.get("limit"), 10),
            region_code=str(params.get("regionCode") or "US"),
        )
        return {"videos": videos}

    async def op_create_playlist(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        playlist = await self.client.create_playlist(
            scope.owner,
            title=str(params["title"]),
            description=str(params.get("description") or ""),
            privacy_status=str(params.get("privacyStatus") or "private"),
        )
        return {"playlist": playlist}

    async def op_search_and_create_playlist(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        found = await self.op_search(params, scope)
        videos = found["videos"]
        playlist = await self.client.create_playlist(
            scope.owner,
            title=str(params["playlistTitle"]),
            description=str(params.get("playlistDescription") or ""),
            privacy_status=str(params.get("privacyStatus") or "private"),
            video_ids=[str(v["id"]) for v in videos if isinstance(v, dict) and v.get("id")],
        )
        return {"playlist": playlist, "videos": videos}


# ============== Language Model ==============

TONE_GUIDE = (
    "Tone guide: motivational = energetic and action-oriented; "
    "professional = formal, concise and business-focused; "
    "casual = friendly and conversational."
)


class LLMHandler(BaseHandler):
    """Language-model operations.

    All prompts run at the handler's (low) temperature. ``format`` with
    ``email_html`` and no template, and ``filter``, never call the model.
    """

    service = "llm"
    operations = (
        "summarize",
        "format",
        "compose",
        "compose_email",
        "filter",
        "filter_and_rank",
        "filter_and_summarize",
        "generate_quote",
    )

    def __init__(self, provider: LLMProvider, temperature: float = 0.2):
        self.provider = provider
        self.temperature = temperature

    # ---------- helpers ----------

    @staticmethod
    def gather_inputs(params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        """Collect the step's ``inputs`` as a name -> value mapping.

        Names come from the unresolved step parameters. Inputs that still
        name an unbound context key (e.g. the producing step failed) are
        dropped.
        """
        resolved = params.get("inputs")
        raw = scope.step.parameters.get("inputs")
        if resolved is None:
            return {}
        if not isinstance(resolved, list):
            return {"input": resolved}

        raw_names = raw if isinstance(raw, list) else []
        gathered: dict[str, Any] = {}
        for index, value in enumerate(resolved):
            name = raw_names[index] if index < len(raw_names) else None
            if not isinstance(name, str) or not name.isidentifier():
                name = f"input_{index + 1}"
            if isinstance(value, str) and value == name and name not in scope.context:
                logger.warning(f"Input '{name}' is not bound in this run, skipping")
                continue
            gathered[name] = value
        return gathered

    @staticmethod
    def flatten(inputs: dict[str, Any]) -> list[Any]:
        items: list[Any] = []
        for value in inputs.values():
            items.extend(extract_items(value))
        return items

    @staticmethod
    def tone(params: dict[str, Any], scope: RunScope) -> str:
        personal = scope.task.personalization.tone
        return str(params.get("tone") or (personal.value if personal else "professional"))

    @staticmethod
    def keywords(params: dict[str, Any], scope: RunScope) -> list[str]:
        for key in ("keywords", "highlight_keywords", "filters"):
            value = params.get(key)
            if isinstance(value, dict):
                value = value.get("keywords")
            if value:
                return [str(k) for k in _as_list(value)]
        return list(scope.task.personalization.keywords)

    @staticmethod
    def dump(data: Any) -> str:
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)

    def _header(self, scope: RunScope) -> str:
        ctx = scope.context
        return (
            f"Current date: {ctx.get('today_long') or ctx.get('date')}\n"
            f"Current day: {ctx.get('weekday')}\n"
            f"Current time: {ctx.get('time')}"
        )

    @staticmethod
    def _event_guidance(inputs: dict[str, Any]) -> str:
        events: list[Any] = []
        for value in inputs.values():
            if isinstance(value, dict) and isinstance(value.get("events"), list):
                events.extend(value["events"])
        if events:
            return (
                f"There are {len(events)} calendar event(s) in the data. List every one of them "
                "with time, title, location and attendees where present, before any other content."
            )
        return "There are no calendar events in the data; say plainly that nothing is scheduled."

    async def _text(self, prompt: str) -> str:
        text = await self.provider.generate_text(prompt, temperature=self.temperature)
        return text.strip()

    # ---------- operations ----------

    async def op_summarize(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        tone = self.tone(params, scope)
        style = str(params.get("style") or "concise")
        length = str(params.get("length") or params.get("summary_length") or "2-3 sentences")
        inputs = self.gather_inputs(params, scope)

        prompt = (
            f"Summarize the following content in a {tone} tone using a {style} style.\n"
            f"Length: {length}\n{TONE_GUIDE}\n\n"
            f"Data:\n{self.dump(inputs)}\n\n"
            "Return only the summary."
        )
        return {"content": await self._text(prompt), "tone": tone, "style": style}

    async def op_format(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        fmt = str(params.get("format") or "email_html")
        title = str(params.get("title") or "Summary")
        template = params.get("template") or params.get("itemTemplate") or ""
        include_links = params.get("include_links", True) is not False
        items = self.flatten(self.gather_inputs(params, scope))
        content_type = detect_content_type(items)

        if fmt == "email_html" and not template:
            html = auto_format_html(items, title=title, include_links=include_links)
            return {"content": html, "format": fmt, "content_type": content_type.value}

        tone = self.tone(params, scope)
        item_rule = (
            f"There are {len(items)} items. Include every item, as a list, with links where available."
            if items else 'There are no items; state "No items found".'
        )
        prompt = (
            f"Format the following {content_type.value} data as {fmt} in a {tone} tone.\n"
            f"{self._header(scope)}\nTitle: {title}\n"
            + (f"Template: {template}\n" if template else "")
            + f"{item_rule}\nInclude links: {include_links}\n\n"
            f"Data:\n{self.dump(items)}\n\n"
            "Use the actual date above, never template variables. "
            "Return only the formatted content, without code fences."
        )
        return {"content": await self._text(prompt), "format": fmt, "content_type": content_type.value}

    async def op_compose(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        tone = self.tone(params, scope)
        fmt = str(params.get("format") or "email_html")
        inputs = self.gather_inputs(params, scope)
        layout = params.get("layout") or {}
        instructions = params.get("instructions") or ""

        prompt = (
            f"Compose {'an HTML email' if fmt == 'email_html' else fmt + ' content'} "
            f"in a {tone} tone.\n{self._header(scope)}\n{TONE_GUIDE}\n\n"
            f"Data:\n{self.dump(inputs)}\n\n"
            f"Layout: {self.dump(layout)}\n"
            + (f"Instructions: {instructions}\n" if instructions else "")
            + f"{self._event_guidance(inputs)}\n"
            "Use the actual date above, never template variables. "
            "Return only the content, without code fences."
        )
        return {"content": await self._text(prompt), "tone": tone, "format": fmt}

    async def op_compose_email(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        tone = self.tone(params, scope)
        fmt = str(params.get("format") or "email_html")
        inputs = self.gather_inputs(params, scope)
        highlights = self.keywords(params, scope)

        prompt = (
            f"Compose a {tone} email briefing as clean HTML with clear sections and headings.\n"
            f"{self._header(scope)}\n{TONE_GUIDE}\n\n"
            f"Data:\n{self.dump(inputs)}\n\n"
            f"{self._event_guidance(inputs)}\n"
            + (f"Highlight these topics: {', '.join(highlights)}\n" if highlights else "")
            + "Use the actual date above, never template variables. "
            "Return only the HTML, without code fences."
        )
        return {"content": await self._text(prompt), "tone": tone, "format": fmt}

    async def op_filter(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        items = self.flatten(self.gather_inputs(params, scope))
        keywords = [k.lower() for k in self.keywords(params, scope)]
        limit = _as_int(params.get("limit"), len(items))

        if keywords:
            items = [
                item for item in items
                if any(k in self.dump(item).lower() for k in keywords)
            ]
        results = items[:limit]
        return {"results": results, "count": len(results)}

    async def op_filter_and_rank(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        items = self.flatten(self.gather_inputs(params, scope))
        limit = _as_int(params.get("limit"), 10)
        if not items:
            return {"results": [], "count": 0}

        keywords = self.keywords(params, scope)
        criteria = params.get("criteria") or "relevance to the keywords"
        prompt = (
            f"Filter and rank these items by {criteria}. "
            f"Keywords: {', '.join(keywords) or 'none'}\n\n"
            f"Data:\n{self.dump(items)}\n\n"
            f"Return ONLY a JSON array with the top {limit} items, keeping their original "
            "structure, most relevant first."
        )
        answer = await self._text(prompt)
        try:
            ranked = parse_json_answer(answer)
        except LLMError:
            ranked = None

        if not isinstance(ranked, list):
            logger.warning("filter_and_rank answer was not a JSON array, keeping original order")
            ranked = items[:limit]
        ranked = ranked[:limit]
        return {"results": ranked, "count": len(ranked)}

    async def op_filter_and_summarize(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        tone = self.tone(params, scope)
        fmt = str(params.get("format") or "email_html")
        inputs = self.gather_inputs(params, scope)
        keywords = self.keywords(params, scope)

        prompt = (
            f"Create a {tone} briefing formatted as "
            f"{'clean HTML' if fmt == 'email_html' else fmt}.\n"
            f"{self._header(scope)}\n{TONE_GUIDE}\n\n"
            f"Data:\n{self.dump(inputs)}\n\n"
            f"{self._event_guidance(inputs)}\n"
            + (f"Keep only content related to: {', '.join(keywords)}\n" if keywords else "")
            + "Return only the formatted content, without code fences."
        )
        return {"content": await self._text(prompt), "tone": tone, "format": fmt, "filtered": True}

    async def op_generate_quote(self, params: dict[str, Any], scope: RunScope) -> dict[str, Any]:
        category = str(params.get("category") or "motivational")
        limit = _as_int(params.get("limit"), 1)
        prompt = (
            f"Write {limit} short {category} quote(s) for founders and builders. "
            "One or two sentences each, focused on perseverance and growth. "
            "No attribution and no quotation marks."
        )
        return {"content": await self._text(prompt), "category": category}


def build_handlers(
    *,
    llm: LLMProvider,
    calendar: CalendarClient | None = None,
    mail: MailClient | None = None,
    search: SearchClient | None = None,
    video: VideoClient | None = None,
    temperature: float = 0.2,
    mail_sender: str | None = None,
) -> list[BaseHandler]:
    """Build handlers for every client that is available.

    Services without a client get no handler; steps using them fail at
    dispatch with an unknown-service error.
    """
    handlers: list[BaseHandler] = [LLMHandler(llm, temperature=temperature)]
    if calendar is not None:
        handlers.append(CalendarHandler(calendar))
    if mail is not None:
        handlers.append(GmailHandler(mail, default_sender=mail_sender))
    if search is not None:
        handlers.append(SearchHandler(search))
    if video is not None:
        handlers.append(YouTubeHandler(video))
    return handlers
