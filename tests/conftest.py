"""Shared test fixtures for the autotask test suite."""

from collections.abc import Callable
from typing import Any

import pytest

from autotask.scheduler.executor import TaskExecutor
from autotask.scheduler.models import Step, Task
from autotask.scheduler.service.service import TaskScheduler
from autotask.scheduler.service.store import TaskStore
from autotask.scheduler.types import StepKind, TaskStatus


class FakeLLM:
    """Language-model provider returning canned answers and recording prompts."""

    def __init__(self, json_answer: Any = None, text_answer: str = "ok") -> None:
        self.json_answer = json_answer
        self.text_answer = text_answer
        self.prompts: list[str] = []

    async def generate_text(self, prompt: str, *, system: str | None = None, temperature: float | None = None) -> str:
        self.prompts.append(prompt)
        if isinstance(self.text_answer, Exception):
            raise self.text_answer
        return self.text_answer

    async def generate_json(self, prompt: str, *, system: str | None = None, temperature: float | None = None) -> Any:
        self.prompts.append(prompt)
        if isinstance(self.json_answer, Exception):
            raise self.json_answer
        return self.json_answer


class RecordingHandler:
    """Service handler whose operations are plain async callables."""

    def __init__(self, service: str, operations: dict[str, Callable]) -> None:
        self.service = service
        self.operations = operations
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def resolve(self, operation: str):
        func = self.operations.get(operation)
        if func is None:
            return None

        async def call(params, scope):
            self.calls.append((operation, params))
            return await func(params, scope)

        return call


@pytest.fixture
def make_llm() -> type[FakeLLM]:
    """Factory fixture: ``make_llm(json_answer=..., text_answer=...)``."""
    return FakeLLM


@pytest.fixture
def make_handler() -> type[RecordingHandler]:
    """Factory fixture: ``make_handler(service, {operation: coroutine})``."""
    return RecordingHandler


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Factory fixture building a calendar-to-email task."""

    def _make(**overrides: Any) -> Task:
        fields: dict[str, Any] = {
            "owner": "alice@example.com",
            "name": "Morning briefing",
            "cron": "0 8 * * 1-5",
            "timezone": "America/Los_Angeles",
            "steps": [
                Step(
                    kind=StepKind.DATA_COLLECTION,
                    service="calendar",
                    operation="list_events",
                    parameters={"timeMin": "today", "timeMax": "end_of_day"},
                    output_binding="calendar_events",
                ),
                Step(
                    kind=StepKind.DELIVERY,
                    service="gmail",
                    operation="send",
                    parameters={"subject": "Agenda for {{today_short}}", "body": "{{calendar_events}}"},
                ),
            ],
            "status": TaskStatus.PENDING_APPROVAL,
        }
        fields.update(overrides)
        return Task(**fields)

    return _make


@pytest.fixture
async def store():
    """Initialized in-memory task store."""
    task_store = TaskStore(":memory:")
    await task_store.initialize()
    yield task_store
    await task_store.close()


@pytest.fixture
def executor_handlers() -> list[RecordingHandler]:
    async def list_events(params, scope):
        return {"events": [{"summary": "Standup", "start": "09:00"}], "count": 1}

    async def send(params, scope):
        return {"sent": True, "to": [scope.owner], "subject": params.get("subject")}

    return [
        RecordingHandler("calendar", {"list_events": list_events}),
        RecordingHandler("gmail", {"send": send}),
    ]


@pytest.fixture
async def scheduler(executor_handlers):
    """Started scheduler over an in-memory store."""
    svc = TaskScheduler(
        store=TaskStore(":memory:"),
        executor=TaskExecutor(executor_handlers, step_timeout_seconds=5),
    )
    await svc.start()
    yield svc
    await svc.stop()
