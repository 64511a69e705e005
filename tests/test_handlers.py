"""Tests for service handlers and the language-model provider."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from aiohttp import test_utils, web

from autotask.scheduler.errors import StepError
from autotask.scheduler.executor import RunScope
from autotask.scheduler.models import Personalization, Step
from autotask.scheduler.templates import build_run_context
from autotask.scheduler.types import StepKind, Tone
from autotask.services.handlers import (
    CalendarHandler,
    GmailHandler,
    LLMHandler,
    SearchHandler,
    YouTubeHandler,
    build_handlers,
)
from autotask.services.llm import LLMError, OpenAICompatibleProvider, parse_json_answer, strip_code_fences


@pytest.fixture
def scope_for(make_task):
    """Build a RunScope for a step with the given raw parameters."""

    def _scope(service, operation, parameters=None, context=None, **task_fields):
        step = Step(kind=StepKind.PROCESSING, service=service, operation=operation, parameters=parameters or {})
        run_context = build_run_context("UTC")
        run_context.update(context or {})
        return RunScope(task=make_task(**task_fields), step=step, context=run_context)

    return _scope


class TestBaseHandler:
    """Tests for operation resolution."""

    def test_resolves_listed_operations(self):
        handler = GmailHandler(AsyncMock())

        assert handler.resolve("send") == handler.op_send
        assert handler.resolve("delete") is None

    def test_build_handlers_only_for_available_clients(self, make_llm):
        handlers = build_handlers(llm=make_llm(), mail=AsyncMock())

        assert [h.service for h in handlers] == ["llm", "gmail"]


class TestCalendarHandler:
    """Tests for calendar operations."""

    async def test_list_events_for_today(self, scope_for):
        client = AsyncMock()
        client.list_events.return_value = [{"summary": "Standup"}]
        handler = CalendarHandler(client)
        params = {"timeMin": "today", "timeMax": "end_of_day"}

        result = await handler.op_list_events(params, scope_for("calendar", "list_events", params))

        assert result == {"events": [{"summary": "Standup"}], "count": 1}
        owner = client.list_events.call_args.args[0]
        kwargs = client.list_events.call_args.kwargs
        assert owner == "alice@example.com"
        assert kwargs["time_max"] - kwargs["time_min"] == timedelta(days=1)
        assert (kwargs["time_min"].hour, kwargs["time_min"].minute) == (0, 0)
        assert kwargs["timezone"] == "America/Los_Angeles"
        assert kwargs["max_results"] == 250


class TestGmailHandler:
    """Tests for mail delivery."""

    async def test_defaults_recipient_to_owner(self, scope_for):
        client = AsyncMock()
        client.send_html.return_value = {"id": "msg-1"}
        handler = GmailHandler(client, default_sender="bot@example.com")

        result = await handler.op_send({"subject": "Hi", "body": "<p>Hello</p>"}, scope_for("gmail", "send"))

        assert result == {"sent": True, "to": ["alice@example.com"], "subject": "Hi", "message_id": "msg-1"}
        kwargs = client.send_html.call_args.kwargs
        assert kwargs["html"] == "<p>Hello</p>"
        assert kwargs["sender"] == "bot@example.com"

    async def test_comma_separated_recipients(self, scope_for):
        client = AsyncMock()
        client.send_html.return_value = {}

        result = await GmailHandler(client).op_send(
            {"to": "a@example.com, b@example.com", "subject": "Hi"}, scope_for("gmail", "send")
        )

        assert result["to"] == ["a@example.com", "b@example.com"]

    async def test_client_errors_propagate(self, scope_for):
        client = AsyncMock()
        client.send_html.side_effect = RuntimeError("quota exceeded")

        with pytest.raises(RuntimeError, match="quota exceeded"):
            await GmailHandler(client).op_send({"subject": "Hi"}, scope_for("gmail", "send"))


class TestSearchHandler:
    """Tests for search operations."""

    async def test_empty_query_is_an_error(self, scope_for):
        with pytest.raises(StepError):
            await SearchHandler(AsyncMock()).op_search({"query": "  "}, scope_for("search", "search"))

    async def test_trending_falls_back_to_personal_keywords(self, scope_for):
        client = AsyncMock()
        client.trending.return_value = []
        scope = scope_for("search", "trending", personalization=Personalization(keywords=["robotics"]))

        await SearchHandler(client).op_trending({}, scope)

        assert client.trending.call_args.kwargs["keywords"] == ["robotics"]

    async def test_fetch_content_collects_links(self, scope_for):
        client = AsyncMock()
        client.fetch_content.return_value = [{"url": "https://a.example", "text": "..."}]
        items = [{"results": [{"link": "https://a.example"}, {"title": "no link"}]}]

        result = await SearchHandler(client).op_fetch_content({"items": items}, scope_for("search", "fetch_content"))

        assert client.fetch_content.call_args.kwargs["urls"] == ["https://a.example"]
        assert result["items"][0]["url"] == "https://a.example"

    async def test_fetch_content_without_urls(self, scope_for):
        with pytest.raises(StepError):
            await SearchHandler(AsyncMock()).op_fetch_content({"items": []}, scope_for("search", "fetch_content"))


class TestYouTubeHandler:
    """Tests for video operations."""

    async def test_search_and_create_playlist(self, scope_for):
        client = AsyncMock()
        client.search.return_value = [{"id": "v1"}, {"id": "v2"}]
        client.create_playlist.return_value = {"id": "pl-1"}
        params = {"query": "rust talks", "playlistTitle": "Weekly Rust", "publishedAfter": "1 week ago"}

        result = await YouTubeHandler(client).op_search_and_create_playlist(
            params, scope_for("youtube", "search_and_create_playlist")
        )

        assert result["playlist"] == {"id": "pl-1"}
        assert client.create_playlist.call_args.kwargs["video_ids"] == ["v1", "v2"]
        assert client.search.call_args.kwargs["published_after"] is not None


class TestLLMHandler:
    """Tests for language-model operations."""

    def test_gather_inputs_skips_unbound_names(self, scope_for):
        events = {"events": []}
        scope = scope_for(
            "llm", "compose_email",
            {"inputs": ["calendar_events", "news"]},
            context={"calendar_events": events},
        )

        gathered = LLMHandler.gather_inputs({"inputs": [events, "news"]}, scope)

        assert gathered == {"calendar_events": events}

    async def test_format_email_html_renders_locally(self, make_llm, scope_for):
        llm = make_llm()
        items = {"results": [{"title": "Paper", "link": "https://arxiv.example/1", "snippet": "New model"}]}
        scope = scope_for("llm", "format", {"inputs": ["papers"]}, context={"papers": items})

        result = await LLMHandler(llm).op_format({"inputs": [items], "title": "Reading"}, scope)

        assert llm.prompts == []
        assert result["content_type"] == "search_result"
        assert "<h2>Reading</h2>" in result["content"]

    async def test_filter_by_keywords(self, make_llm, scope_for):
        items = {"results": [{"title": "AI chips"}, {"title": "Gardening"}]}
        scope = scope_for("llm", "filter", {"inputs": ["news"]}, context={"news": items})

        result = await LLMHandler(make_llm()).op_filter({"inputs": [items], "keywords": ["ai"]}, scope)

        assert result == {"results": [{"title": "AI chips"}], "count": 1}

    async def test_filter_and_rank_parses_json_answer(self, make_llm, scope_for):
        items = {"results": [{"title": "a"}, {"title": "b"}]}
        llm = make_llm(text_answer='```json\n[{"title": "b"}]\n```')
        scope = scope_for("llm", "filter_and_rank", {"inputs": ["news"]}, context={"news": items})

        result = await LLMHandler(llm).op_filter_and_rank({"inputs": [items], "limit": 5}, scope)

        assert result == {"results": [{"title": "b"}], "count": 1}

    async def test_filter_and_rank_falls_back_to_original_order(self, make_llm, scope_for):
        items = {"results": [{"title": "a"}, {"title": "b"}, {"title": "c"}]}
        llm = make_llm(text_answer="I could not rank these.")
        scope = scope_for("llm", "filter_and_rank", {"inputs": ["news"]}, context={"news": items})

        result = await LLMHandler(llm).op_filter_and_rank({"inputs": [items], "limit": 2}, scope)

        assert result["results"] == [{"title": "a"}, {"title": "b"}]

    async def test_compose_email_uses_personal_tone(self, make_llm, scope_for):
        llm = make_llm(text_answer="  <p>Good morning</p>  ")
        scope = scope_for(
            "llm", "compose_email", {"inputs": ["calendar_events"]},
            context={"calendar_events": {"events": [{"summary": "Standup"}]}},
            personalization=Personalization(tone=Tone.MOTIVATIONAL),
        )

        result = await LLMHandler(llm).op_compose_email({"inputs": [{"events": [{"summary": "Standup"}]}]}, scope)

        assert result["content"] == "<p>Good morning</p>"
        assert result["tone"] == "motivational"
        assert "1 calendar event(s)" in llm.prompts[0]

    async def test_provider_errors_propagate(self, make_llm, scope_for):
        llm = make_llm(text_answer=LLMError("timeout"))

        with pytest.raises(LLMError):
            await LLMHandler(llm).op_summarize({"inputs": []}, scope_for("llm", "summarize"))


class TestJsonAnswers:
    """Tests for model answer parsing."""

    def test_strip_code_fences(self):
        assert strip_code_fences("```html\n<p>x</p>\n```") == "<p>x</p>"

    def test_parse_fenced_json(self):
        assert parse_json_answer('```json\n{"a": 1}\n```') == {"a": 1}

    def test_invalid_json(self):
        with pytest.raises(LLMError):
            parse_json_answer("not json")


@pytest.fixture
async def completions():
    """Local OpenAI-compatible endpoint with a scripted answer."""
    state = {"status": 200, "content": '{"ok": true}', "requests": []}

    async def chat_completions(request):
        state["requests"].append(await request.json())
        if state["status"] >= 400:
            return web.Response(status=state["status"], text="upstream exploded")
        return web.json_response({"choices": [{"message": {"content": state["content"]}}]})

    app = web.Application()
    app.router.add_post("/v1/chat/completions", chat_completions)
    server = test_utils.TestServer(app)
    await server.start_server()
    state["base_url"] = str(server.make_url("/v1"))
    yield state
    await server.close()


class TestOpenAICompatibleProvider:
    """Tests for the HTTP provider."""

    async def test_generate_json(self, completions):
        provider = OpenAICompatibleProvider(api_key="sk-test", model="test-model", base_url=completions["base_url"])

        answer = await provider.generate_json("plan this", system="be terse", temperature=0.1)

        assert answer == {"ok": True}
        body = completions["requests"][0]
        assert body["model"] == "test-model"
        assert body["temperature"] == 0.1
        assert body["response_format"] == {"type": "json_object"}
        assert body["messages"][0] == {"role": "system", "content": "be terse"}

    async def test_generate_text(self, completions):
        completions["content"] = "Hello there"
        provider = OpenAICompatibleProvider(api_key="sk-test", base_url=completions["base_url"])

        assert await provider.generate_text("hi") == "Hello there"
        assert "response_format" not in completions["requests"][0]

    async def test_http_error(self, completions):
        completions["status"] = 500
        provider = OpenAICompatibleProvider(api_key="sk-test", base_url=completions["base_url"])

        with pytest.raises(LLMError, match="status 500"):
            await provider.generate_text("hi")

    async def test_missing_api_key(self):
        with pytest.raises(LLMError, match="No API key"):
            await OpenAICompatibleProvider(api_key=None).generate_text("hi")
