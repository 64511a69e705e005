"""Event system for the scheduler.

Emits events for task lifecycle changes and runs.
"""
from typing import Any, Callable

from loguru import logger

from ..schedule import now_ms
from ..types import SchedulerEvent

logger = logger.bind(module="scheduler.events")


# Type alias for event handlers
EventHandler = Callable[[SchedulerEvent], None]


class EventEmitter:
    """Event emitter for scheduler events."""

    def __init__(self):
        self._handlers: list[EventHandler] = []

    def add_handler(self, handler: EventHandler) -> None:
        """Add an event handler."""
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        """Remove an event handler."""
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: SchedulerEvent) -> None:
        """Emit an event to all handlers."""
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler error: {e}")


def emit_task_event(
    emitter: EventEmitter,
    event_type: str,
    task_id: str,
    payload: dict[str, Any] | None = None,
) -> None:
    """Emit a task-related event.

    Args:
        emitter: Event emitter instance
        event_type: Type of event (e.g., "task.started", "task.completed")
        task_id: ID of the task
        payload: Additional event payload
    """
    emitter.emit(SchedulerEvent(
        type=event_type,
        task_id=task_id,
        timestamp_ms=now_ms(),
        payload=payload or {},
    ))


class EventTypes:
    """Constants for event types."""

    # Scheduler lifecycle
    SCHEDULER_STARTED = "scheduler.started"
    SCHEDULER_STOPPED = "scheduler.stopped"

    # Task lifecycle
    TASK_CREATED = "task.created"
    TASK_APPROVED = "task.approved"
    TASK_UPDATED = "task.updated"
    TASK_DELETED = "task.deleted"
    TASK_REGISTERED = "task.registered"
    TASK_UNREGISTERED = "task.unregistered"

    # Task execution
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_SKIPPED = "task.skipped"
