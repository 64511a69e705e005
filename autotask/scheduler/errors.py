"""Exceptions raised by the task engine."""
from typing import Any


class AutotaskError(Exception):
    """Base class for task engine errors."""


class TranslationError(AutotaskError):
    """The natural-language request could not be turned into a valid plan.

    Raised for provider outages, malformed model output and schema
    mismatches alike; callers do not distinguish between them.
    """


class PlanValidationError(TranslationError):
    """A structured plan failed deterministic validation."""

    def __init__(
        self,
        errors: list[str],
        valid_operations: list[str] | None = None,
        plan: dict[str, Any] | None = None,
    ):
        self.errors = errors
        self.valid_operations = valid_operations or []
        self.plan = plan
        super().__init__(errors[0] if errors else "Plan validation failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": str(self),
            "errors": self.errors,
            "valid_operations": self.valid_operations,
        }


class RegistrationError(AutotaskError):
    """A task could not be given a timer."""


class StepError(AutotaskError):
    """A single step failed while dispatching."""


class TaskNotFoundError(AutotaskError):
    """No task exists with the given id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class InvalidTransitionError(AutotaskError):
    """A lifecycle transition is not allowed from the task's current status."""
