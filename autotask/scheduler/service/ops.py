"""Core operations for the scheduler service.

Task lifecycle (create, approve, update, delete) and history queries. Each
operation persists first and then reconciles the task's timer.
"""
from typing import Any

from loguru import logger

from ..errors import InvalidTransitionError, PlanValidationError, TaskNotFoundError
from ..models import Task, TaskPatch
from ..schedule import compute_next_run_at_ms, is_valid_timezone, validate_cron_expression
from ..translator import PlanTranslator
from ..types import TaskStatus
from .events import EventTypes, emit_task_event
from .service import TaskScheduler

logger = logger.bind(module="scheduler.ops")


async def _require(scheduler: TaskScheduler, task_id: str) -> Task:
    task = await scheduler.store.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


async def create_task_from_prompt(
    scheduler: TaskScheduler,
    translator: PlanTranslator,
    prompt: str,
    owner: str,
    recipients: list[str] | None = None,
    sender: str | None = None,
) -> Task:
    """Translate a request and persist it awaiting approval.

    Nothing is persisted when translation or validation fails.

    Returns:
        The stored task, disabled and in ``pending_approval`` status
    """
    task = await translator.translate(prompt, owner, recipients=recipients, sender=sender)
    await scheduler.store.save(task)

    emit_task_event(scheduler.events, EventTypes.TASK_CREATED, task.id, {"owner": owner})
    logger.info(f"Created task {task.id} for {owner}: {task.name}")
    return task


async def approve_task(scheduler: TaskScheduler, task_id: str) -> Task:
    """Approve a pending task, enable it and give it a timer.

    Raises:
        TaskNotFoundError: If the task does not exist
        InvalidTransitionError: If the task is not awaiting approval
    """
    task = await _require(scheduler, task_id)
    if task.status != TaskStatus.PENDING_APPROVAL:
        raise InvalidTransitionError(
            f"Task {task_id} cannot be approved from status '{task.status.value}'"
        )

    task.status = TaskStatus.APPROVED
    task.enabled = True
    await scheduler.store.save(task)

    task = await scheduler.register_task(task_id)

    emit_task_event(scheduler.events, EventTypes.TASK_APPROVED, task_id)
    logger.info(f"Approved task {task_id}")
    return task


async def update_task(scheduler: TaskScheduler, task_id: str, patch: TaskPatch) -> Task:
    """Apply a partial update and reconcile the timer.

    Raises:
        TaskNotFoundError: If the task does not exist
        PlanValidationError: If the new cron expression or timezone is invalid
        InvalidTransitionError: If the status change is not allowed
    """
    task = await _require(scheduler, task_id)

    errors = []
    if patch.cron is not None and not validate_cron_expression(patch.cron):
        errors.append(f"Invalid cron expression: '{patch.cron}'")
    if patch.timezone is not None and not is_valid_timezone(patch.timezone):
        errors.append(f"Unknown timezone: '{patch.timezone}'")
    if errors:
        raise PlanValidationError(errors)

    if (
        patch.status == TaskStatus.APPROVED
        and task.status not in (TaskStatus.PENDING_APPROVAL, TaskStatus.APPROVED)
    ):
        raise InvalidTransitionError(
            f"Task {task_id} cannot move from '{task.status.value}' to 'approved'"
        )

    patch.apply(task)
    if patch.changes_schedule:
        task.next_run_at_ms = compute_next_run_at_ms(task.cron, task.timezone)
    await scheduler.store.save(task)

    if task.is_schedulable:
        if patch.changes_schedule or not scheduler.has_timer(task_id):
            task = await scheduler.register_task(task_id)
    else:
        scheduler.unregister_task(task_id)

    emit_task_event(scheduler.events, EventTypes.TASK_UPDATED, task_id)
    logger.info(f"Updated task {task_id}")
    return task


async def delete_task(scheduler: TaskScheduler, task_id: str) -> bool:
    """Delete a task together with its run history.

    Returns:
        True if the task existed
    """
    scheduler.unregister_task(task_id)
    scheduler.state.drop_run_lock(task_id)
    removed = await scheduler.store.delete(task_id)
    if removed:
        emit_task_event(scheduler.events, EventTypes.TASK_DELETED, task_id)
        logger.info(f"Deleted task {task_id}")
    return removed


async def get_task(scheduler: TaskScheduler, task_id: str) -> Task:
    return await _require(scheduler, task_id)


async def list_tasks(scheduler: TaskScheduler, owner: str | None = None, limit: int = 100) -> list[Task]:
    return await scheduler.store.list_tasks(owner=owner, limit=limit)


async def get_history(scheduler: TaskScheduler, task_id: str, limit: int = 20) -> dict[str, Any]:
    """Recent executions of a task plus aggregate statistics."""
    await _require(scheduler, task_id)
    executions = await scheduler.store.get_executions(task_id, limit=limit)
    stats = await scheduler.store.get_task_stats(task_id)
    return {
        "task_id": task_id,
        "executions": [e.to_dict() for e in executions],
        "stats": stats.to_dict(),
    }
