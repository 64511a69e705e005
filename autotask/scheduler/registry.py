"""Operation registry.

Static catalog of every ``(service, operation)`` pair a task step may use,
with the parameter names each one requires or accepts. Used to validate
plans at creation time and to bind steps to handlers before execution.
"""
import difflib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Step
from .templates import RESERVED_CONTEXT_KEYS


class Operation(str, Enum):
    """Every registered pair, keyed as ``service.operation``."""

    # Calendar
    CALENDAR_LIST_EVENTS = "calendar.list_events"
    CALENDAR_GET_TODAY = "calendar.get_today"

    # Mail
    GMAIL_SEND = "gmail.send"

    # Search
    SEARCH_SEARCH = "search.search"
    SEARCH_WEB_SEARCH = "search.web_search"
    SEARCH_TRENDING = "search.trending"
    SEARCH_QUOTES = "search.quotes"
    SEARCH_HACKER_NEWS_TOP = "search.hacker_news_top"
    SEARCH_FETCH_CONTENT = "search.fetch_content"

    # Video
    YOUTUBE_SEARCH = "youtube.search"
    YOUTUBE_TRENDING = "youtube.trending"
    YOUTUBE_CREATE_PLAYLIST = "youtube.create_playlist"
    YOUTUBE_SEARCH_AND_CREATE_PLAYLIST = "youtube.search_and_create_playlist"

    # Language model
    LLM_SUMMARIZE = "llm.summarize"
    LLM_FORMAT = "llm.format"
    LLM_COMPOSE = "llm.compose"
    LLM_COMPOSE_EMAIL = "llm.compose_email"
    LLM_FILTER = "llm.filter"
    LLM_FILTER_AND_RANK = "llm.filter_and_rank"
    LLM_FILTER_AND_SUMMARIZE = "llm.filter_and_summarize"
    LLM_GENERATE_QUOTE = "llm.generate_quote"

    @property
    def service(self) -> str:
        return self.value.split(".", 1)[0]

    @property
    def operation(self) -> str:
        return self.value.split(".", 1)[1]


@dataclass(frozen=True)
class OperationDefinition:
    """Description and parameter names of one registered operation."""
    key: Operation
    description: str
    required_params: frozenset[str] = frozenset()
    optional_params: frozenset[str] = frozenset()

    @property
    def service(self) -> str:
        return self.key.service

    @property
    def operation(self) -> str:
        return self.key.operation


@dataclass
class ValidationResult:
    """Outcome of validating one step against the registry."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "suggestions": self.suggestions,
        }


def _define(
    key: Operation,
    description: str,
    required: tuple[str, ...] = (),
    optional: tuple[str, ...] = (),
) -> OperationDefinition:
    return OperationDefinition(
        key=key,
        description=description,
        required_params=frozenset(required),
        optional_params=frozenset(optional),
    )


_DEFINITIONS = [
    _define(
        Operation.CALENDAR_LIST_EVENTS,
        "List calendar events within a time range",
        optional=("timeMin", "timeMax", "maxResults", "timeZone", "timezone"),
    ),
    _define(Operation.CALENDAR_GET_TODAY, "Get today's calendar events"),
    _define(
        Operation.GMAIL_SEND,
        "Send an email",
        required=("subject",),
        optional=("to", "body", "html", "from"),
    ),
    _define(
        Operation.SEARCH_SEARCH,
        "Search the web",
        required=("query",),
        optional=("limit", "dateRestrict"),
    ),
    _define(
        Operation.SEARCH_WEB_SEARCH,
        "Alias for search.search",
        required=("query",),
        optional=("limit", "dateRestrict"),
    ),
    _define(
        Operation.SEARCH_TRENDING,
        "Get trending topics for given keywords",
        required=("keywords",),
        optional=("limit",),
    ),
    _define(
        Operation.SEARCH_QUOTES,
        "Get inspirational quotes",
        optional=("limit", "category"),
    ),
    _define(
        Operation.SEARCH_HACKER_NEWS_TOP,
        "Fetch top stories from Hacker News",
        optional=("limit", "includeFields"),
    ),
    _define(
        Operation.SEARCH_FETCH_CONTENT,
        "Fetch web page content from URLs",
        required=("items",),
        optional=("fields", "timeoutSec"),
    ),
    _define(
        Operation.YOUTUBE_SEARCH,
        "Search for YouTube videos",
        required=("query",),
        optional=("maxResults", "limit", "order", "publishedAfter", "regionCode"),
    ),
    _define(
        Operation.YOUTUBE_TRENDING,
        "Get trending YouTube videos",
        optional=("maxResults", "limit", "regionCode"),
    ),
    _define(
        Operation.YOUTUBE_CREATE_PLAYLIST,
        "Create a new YouTube playlist",
        required=("title",),
        optional=("description", "privacyStatus"),
    ),
    _define(
        Operation.YOUTUBE_SEARCH_AND_CREATE_PLAYLIST,
        "Search for videos and create a playlist with the results",
        required=("query", "playlistTitle"),
        optional=("playlistDescription", "maxResults", "limit"),
    ),
    _define(
        Operation.LLM_SUMMARIZE,
        "Summarize content",
        required=("inputs",),
        optional=("tone", "style", "length"),
    ),
    _define(
        Operation.LLM_FORMAT,
        "Format data into an output format such as email_html",
        required=("inputs", "format"),
        optional=("title", "template", "tone", "include_links"),
    ),
    _define(
        Operation.LLM_COMPOSE,
        "Compose free-form content from bound data",
        required=("inputs",),
        optional=("tone", "format", "layout", "instructions"),
    ),
    _define(
        Operation.LLM_COMPOSE_EMAIL,
        "Compose an HTML email briefing from bound data",
        required=("inputs",),
        optional=("tone", "format", "highlight_keywords"),
    ),
    _define(
        Operation.LLM_FILTER,
        "Keep only items matching keywords",
        required=("inputs",),
        optional=("filters", "keywords", "limit"),
    ),
    _define(
        Operation.LLM_FILTER_AND_RANK,
        "Filter and rank items by relevance",
        required=("inputs",),
        optional=("keywords", "limit", "criteria"),
    ),
    _define(
        Operation.LLM_FILTER_AND_SUMMARIZE,
        "Filter and summarize data",
        required=("inputs",),
        optional=("filters", "tone", "format", "limit"),
    ),
    _define(
        Operation.LLM_GENERATE_QUOTE,
        "Generate a short motivational quote",
        optional=("category", "limit"),
    ),
]

OPERATION_REGISTRY: dict[Operation, OperationDefinition] = {d.key: d for d in _DEFINITIONS}

SERVICES: tuple[str, ...] = tuple(dict.fromkeys(op.service for op in Operation))


def lookup(service: str, operation: str) -> Operation | None:
    """Return the registered pair, or None if it does not exist."""
    try:
        return Operation(f"{service}.{operation}")
    except ValueError:
        return None


def is_supported(service: str, operation: str) -> bool:
    return lookup(service, operation) is not None


def get_definition(service: str, operation: str) -> OperationDefinition | None:
    op = lookup(service, operation)
    return OPERATION_REGISTRY[op] if op else None


def required_params(service: str, operation: str) -> set[str]:
    """Required parameter names of a pair; empty for unknown pairs."""
    definition = get_definition(service, operation)
    return set(definition.required_params) if definition else set()


def service_operations(service: str) -> list[str]:
    """Operation names registered for a service, in catalog order."""
    return [op.operation for op in Operation if op.service == service]


def suggest_operation(service: str, operation: str) -> str | None:
    """Closest registered ``service.operation`` to an unknown pair."""
    operations = service_operations(service)
    if operations:
        matches = difflib.get_close_matches(operation, operations, n=1, cutoff=0.0)
        return f"{service}.{matches[0]}" if matches else None

    services = difflib.get_close_matches(service, SERVICES, n=1, cutoff=0.0)
    if not services:
        return None
    matches = difflib.get_close_matches(operation, service_operations(services[0]), n=1, cutoff=0.0)
    return f"{services[0]}.{matches[0]}" if matches else f"{services[0]}.{service_operations(services[0])[0]}"


def validate_step(step: Step) -> ValidationResult:
    """Validate a step against the registry.

    Checks that the pair exists, that every required parameter is present
    and that the output binding does not shadow a reserved context key.

    Args:
        step: Step to validate

    Returns:
        Validation result; ``suggestions`` lists the valid operations of the
        step's service (or of the closest service) when the pair is unknown
    """
    errors: list[str] = []
    definition = get_definition(step.service, step.operation)

    if definition is None:
        closest = suggest_operation(step.service, step.operation)
        hint = f" Did you mean '{closest}'?" if closest else ""
        errors.append(f"Unknown operation: {step.action}.{hint}")
        service = step.service if service_operations(step.service) else (closest or "").split(".")[0]
        suggestions = [f"{service}.{name}" for name in service_operations(service)]
        return ValidationResult(valid=False, errors=errors, suggestions=suggestions)

    for param in sorted(definition.required_params):
        if param not in step.parameters:
            errors.append(f"Missing required parameter '{param}' for {step.action}")

    if step.output_binding and step.output_binding in RESERVED_CONTEXT_KEYS:
        errors.append(
            f"Output binding '{step.output_binding}' of {step.action} "
            f"collides with a reserved context key"
        )

    return ValidationResult(valid=not errors, errors=errors)


def operations_catalog() -> str:
    """Render the registry as the vocabulary text given to the language model."""
    lines: list[str] = []
    for service in SERVICES:
        lines.append(f"{service}:")
        for op in Operation:
            if op.service != service:
                continue
            definition = OPERATION_REGISTRY[op]
            required = ", ".join(sorted(definition.required_params)) or "none"
            optional = ", ".join(sorted(definition.optional_params)) or "none"
            lines.append(
                f"  - {op.operation}: {definition.description} "
                f"(required: {required}; optional: {optional})"
            )
    return "\n".join(lines)
