"""Core type definitions for the task scheduler.

This module defines:
- Status enums for tasks, runs and steps
- Step kinds and personalization tones
- Execution records and per-step results
- Event and monitoring types
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ============== Step Kinds ==============

class StepKind(str, Enum):
    """Kind of step inside a task plan."""
    DATA_COLLECTION = "data_collection"
    PROCESSING = "processing"
    DELIVERY = "delivery"   # Failure aborts the whole run


class Tone(str, Enum):
    """Tone used by language-model steps."""
    MOTIVATIONAL = "motivational"
    PROFESSIONAL = "professional"
    CASUAL = "casual"


class ContentType(str, Enum):
    """Semantic type of a normalized result list."""
    VIDEO = "video"
    EVENT = "event"
    EMAIL = "email"
    SEARCH_RESULT = "search_result"
    GENERIC = "generic"
    UNKNOWN = "unknown"


# ============== Status Types ==============

class TaskStatus(str, Enum):
    """Lifecycle status of a task."""
    CREATED = "created"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DISABLED = "disabled"


class RunStatus(str, Enum):
    """Status of a task execution."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Outcome of a single step."""
    SUCCESS = "success"
    FAILED = "failed"


# ============== Execution Records ==============

@dataclass
class StepResult:
    """Outcome of one attempted step."""
    action: str                     # "service.operation"
    kind: StepKind
    status: StepStatus
    data: Any = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "kind": self.kind.value,
            "status": self.status.value,
            "data": self.data,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        return cls(
            action=data.get("action", ""),
            kind=StepKind(data.get("kind", "processing")),
            status=StepStatus(data.get("status", "failed")),
            data=data.get("data"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms", 0),
        )


@dataclass
class ExecutionRecord:
    """One historical run of a task.

    Created with status ``running`` when the run starts and finalized once
    the executor returns. It is not modified after finalization.
    """
    task_id: str
    started_at_ms: int
    id: str = ""
    completed_at_ms: int | None = None
    status: RunStatus = RunStatus.RUNNING
    duration_ms: int = 0
    steps: list[StepResult] = field(default_factory=list)
    error: str | None = None

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if not s.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "started_at_ms": self.started_at_ms,
            "completed_at_ms": self.completed_at_ms,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        return cls(
            id=data.get("id", ""),
            task_id=data.get("task_id", ""),
            started_at_ms=data.get("started_at_ms", 0),
            completed_at_ms=data.get("completed_at_ms"),
            status=RunStatus(data.get("status", "running")),
            duration_ms=data.get("duration_ms", 0),
            steps=[StepResult.from_dict(s) for s in data.get("steps", [])],
            error=data.get("error"),
        )


# ============== Event Types ==============

@dataclass
class SchedulerEvent:
    """Event emitted by the scheduler."""
    type: str                       # e.g. "task.started", "task.completed"
    task_id: str
    timestamp_ms: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "task_id": self.task_id,
            "timestamp_ms": self.timestamp_ms,
            "payload": self.payload,
        }


# ============== Monitoring Types ==============

@dataclass
class TaskStats:
    """Run statistics for a single task."""
    task_id: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    avg_duration_ms: float = 0.0
    last_run_at_ms: int | None = None
    last_status: str | None = None

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.failed
        return self.completed / finished if finished else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "success_rate": self.success_rate,
            "avg_duration_ms": self.avg_duration_ms,
            "last_run_at_ms": self.last_run_at_ms,
            "last_status": self.last_status,
        }


@dataclass
class SchedulerStatus:
    """Current status of the scheduler."""
    running: bool
    active_timers: int
    task_ids: list[str] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "active_timers": self.active_timers,
            "task_ids": self.task_ids,
            "in_flight": self.in_flight,
        }
