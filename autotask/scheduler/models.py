"""Data models for scheduled tasks.

A task is a user-owned recurring job: a cron schedule plus an ordered list
of steps that collect data, process it and deliver the result.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from .schedule import now_ms
from .types import StepKind, TaskStatus, Tone


@dataclass
class Step:
    """One unit of work inside a task's ordered plan.

    Parameter values may contain ``{{name}}`` placeholders that are resolved
    against the run context right before the step is dispatched.
    """
    kind: StepKind
    service: str
    operation: str
    parameters: dict[str, Any] = field(default_factory=dict)
    output_binding: str | None = None

    @property
    def action(self) -> str:
        return f"{self.service}.{self.operation}"

    @property
    def is_delivery(self) -> bool:
        return self.kind == StepKind.DELIVERY

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "service": self.service,
            "operation": self.operation,
            "parameters": self.parameters,
            "output_binding": self.output_binding,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        return cls(
            kind=StepKind(data.get("type") or data.get("kind") or "processing"),
            service=data.get("service", ""),
            operation=data.get("operation", ""),
            parameters=dict(data.get("parameters") or {}),
            output_binding=data.get("output_binding") or data.get("outputBinding"),
        )


@dataclass
class Personalization:
    """Tone, keywords and free-form filters applied to a task's content."""
    tone: Tone | None = None
    keywords: list[str] = field(default_factory=list)
    filters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tone": self.tone.value if self.tone else None,
            "keywords": self.keywords,
            "filters": self.filters,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Personalization:
        data = data or {}
        tone = data.get("tone")
        return cls(
            tone=Tone(tone) if tone else None,
            keywords=list(data.get("keywords") or []),
            filters=dict(data.get("filters") or {}),
        )


@dataclass
class Task:
    """A persisted, user-owned recurring job."""

    owner: str
    name: str
    cron: str
    timezone: str = "UTC"
    description: str = ""
    steps: list[Step] = field(default_factory=list)
    personalization: Personalization = field(default_factory=Personalization)
    enabled: bool = False
    status: TaskStatus = TaskStatus.CREATED
    id: str = field(default_factory=lambda: str(uuid4()))
    last_run_at_ms: int | None = None
    next_run_at_ms: int | None = None
    created_at_ms: int = field(default_factory=now_ms)
    updated_at_ms: int = field(default_factory=now_ms)

    @property
    def is_schedulable(self) -> bool:
        """Only approved and enabled tasks get a timer."""
        return self.enabled and self.status == TaskStatus.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "description": self.description,
            "cron": self.cron,
            "timezone": self.timezone,
            "steps": [s.to_dict() for s in self.steps],
            "personalization": self.personalization.to_dict(),
            "enabled": self.enabled,
            "status": self.status.value,
            "last_run_at_ms": self.last_run_at_ms,
            "next_run_at_ms": self.next_run_at_ms,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=data.get("id") or str(uuid4()),
            owner=data.get("owner") or "",
            name=data.get("name") or "",
            description=data.get("description") or "",
            cron=data.get("cron") or "",
            timezone=data.get("timezone") or "UTC",
            steps=[Step.from_dict(s) for s in data.get("steps") or []],
            personalization=Personalization.from_dict(data.get("personalization")),
            enabled=bool(data.get("enabled", False)),
            status=TaskStatus(data.get("status", "created")),
            last_run_at_ms=data.get("last_run_at_ms"),
            next_run_at_ms=data.get("next_run_at_ms"),
            created_at_ms=data.get("created_at_ms") or now_ms(),
            updated_at_ms=data.get("updated_at_ms") or now_ms(),
        )


@dataclass
class TaskPatch:
    """Partial update of an existing task."""
    name: str | None = None
    description: str | None = None
    cron: str | None = None
    timezone: str | None = None
    enabled: bool | None = None
    status: TaskStatus | None = None

    @property
    def changes_schedule(self) -> bool:
        return self.cron is not None or self.timezone is not None

    def apply(self, task: Task) -> Task:
        """Apply non-None fields to the task in place."""
        if self.name is not None:
            task.name = self.name
        if self.description is not None:
            task.description = self.description
        if self.cron is not None:
            task.cron = self.cron
        if self.timezone is not None:
            task.timezone = self.timezone
        if self.enabled is not None:
            task.enabled = self.enabled
        if self.status is not None:
            task.status = self.status
        task.updated_at_ms = now_ms()
        return task
