"""Scheduler module for natural-language scheduled tasks.

This module provides:
- Translation of requests into validated, cron-scheduled task plans
- A registry of the operations steps may use
- Template resolution and smart values for step parameters
- Sequential step execution with per-step timeouts
- SQLite persistence and asyncio-based timers
"""
# Core types
from .types import (
    StepKind,
    Tone,
    ContentType,
    TaskStatus,
    RunStatus,
    StepStatus,
    StepResult,
    ExecutionRecord,
    SchedulerEvent,
    TaskStats,
    SchedulerStatus,
)

# Errors
from .errors import (
    AutotaskError,
    TranslationError,
    PlanValidationError,
    RegistrationError,
    StepError,
    TaskNotFoundError,
    InvalidTransitionError,
)

# Models
from .models import Step, Personalization, Task, TaskPatch

# Schedule utilities
from .schedule import (
    compute_next_run_at_ms,
    cron_to_human,
    validate_cron_expression,
    is_valid_timezone,
    now_ms,
)

# Registry
from .registry import Operation, OPERATION_REGISTRY, is_supported, validate_step

# Executor
from .executor import TaskExecutor, RunScope

# Translator
from .translator import PlanTranslator, TaskPlan, preview

# Service
from .service import TaskScheduler, TaskStore, EventEmitter, EventTypes

__all__ = [
    # Core types
    "StepKind",
    "Tone",
    "ContentType",
    "TaskStatus",
    "RunStatus",
    "StepStatus",
    "StepResult",
    "ExecutionRecord",
    "SchedulerEvent",
    "TaskStats",
    "SchedulerStatus",
    # Errors
    "AutotaskError",
    "TranslationError",
    "PlanValidationError",
    "RegistrationError",
    "StepError",
    "TaskNotFoundError",
    "InvalidTransitionError",
    # Models
    "Step",
    "Personalization",
    "Task",
    "TaskPatch",
    # Schedule utilities
    "compute_next_run_at_ms",
    "cron_to_human",
    "validate_cron_expression",
    "is_valid_timezone",
    "now_ms",
    # Registry
    "Operation",
    "OPERATION_REGISTRY",
    "is_supported",
    "validate_step",
    # Executor
    "TaskExecutor",
    "RunScope",
    # Translator
    "PlanTranslator",
    "TaskPlan",
    "preview",
    # Service
    "TaskScheduler",
    "TaskStore",
    "EventEmitter",
    "EventTypes",
]
