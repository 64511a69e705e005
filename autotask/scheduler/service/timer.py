"""Timer management for the scheduler.

Each registered task owns one asyncio task that sleeps until the next
cron fire, runs the task and only then computes the following fire. A
timer therefore never overlaps itself; the per-task run lock additionally
keeps manual triggers from overlapping a timer-driven run.
"""
import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from ..errors import TaskNotFoundError
from ..models import Task
from ..schedule import compute_next_run_at_ms, now_ms
from ..types import ExecutionRecord, RunStatus
from .events import EventTypes, emit_task_event

if TYPE_CHECKING:
    from .service import TaskScheduler

logger = logger.bind(module="scheduler.timer")

# Long sleeps are split so wall-clock jumps (suspend, NTP) are noticed.
MAX_SLEEP_SECONDS = 60.0


async def sleep_until(target_ms: int) -> None:
    """Sleep until the given timestamp, in bounded slices."""
    while True:
        remaining = (target_ms - now_ms()) / 1000.0
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, MAX_SLEEP_SECONDS))


async def timer_loop(scheduler: "TaskScheduler", task_id: str, cron: str, timezone: str) -> None:
    """Fire a task on its cron schedule until cancelled.

    The next fire is computed only after the previous run returns.
    Executions are shielded by the scheduler: cancelling the timer
    (unregister, delete, disable) stops future fires but lets a run in
    progress finish.
    """
    logger.debug(f"Timer started for task {task_id} ({cron} {timezone})")

    while True:
        try:
            next_run_ms = compute_next_run_at_ms(cron, timezone)
            await sleep_until(next_run_ms)

            logger.info(f"Timer fired for task {task_id}")
            await scheduler.execute_task(task_id)

        except asyncio.CancelledError:
            logger.debug(f"Timer cancelled for task {task_id}")
            raise
        except TaskNotFoundError:
            logger.warning(f"Task {task_id} no longer exists, stopping its timer")
            scheduler.state.timers.pop(task_id, None)
            return
        except Exception as e:
            logger.error(f"Timer error for task {task_id}: {e}")
            await asyncio.sleep(1)  # Avoid tight loop on errors


def arm_timer(scheduler: "TaskScheduler", task: Task) -> asyncio.Task:
    """Start the timer of a task, replacing any existing one."""
    disarm_timer(scheduler, task.id)
    timer = asyncio.create_task(
        timer_loop(scheduler, task.id, task.cron, task.timezone),
        name=f"timer:{task.id}",
    )
    scheduler.state.timers[task.id] = timer
    return timer


def disarm_timer(scheduler: "TaskScheduler", task_id: str) -> bool:
    """Cancel and forget the timer of a task.

    Returns:
        True if a timer existed
    """
    timer = scheduler.state.timers.pop(task_id, None)
    if timer is None:
        return False
    timer.cancel()
    return True


async def run_task(
    scheduler: "TaskScheduler",
    task_id: str,
    force: bool = False,
) -> ExecutionRecord | None:
    """Run a task once.

    Shared by timer fires and manual triggers.

    Args:
        scheduler: The scheduler
        task_id: ID of the task to run
        force: Run even if the task is disabled

    Returns:
        The finalized execution record, or None if the run was skipped
        (task disabled, or another run of it is still in flight)

    Raises:
        TaskNotFoundError: If the task does not exist
    """
    lock = scheduler.state.run_lock(task_id)
    if lock.locked():
        logger.warning(f"Task {task_id} is already running, skipping this trigger")
        emit_task_event(scheduler.events, EventTypes.TASK_SKIPPED, task_id, {"reason": "in_flight"})
        return None

    async with lock:
        task = await scheduler.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if not task.enabled and not force:
            logger.info(f"Task {task_id} is disabled, skipping")
            emit_task_event(scheduler.events, EventTypes.TASK_SKIPPED, task_id, {"reason": "disabled"})
            return None

        started = ExecutionRecord(task_id=task_id, started_at_ms=now_ms())
        execution_id = await scheduler.store.insert_execution(started)
        scheduler.state.in_flight.add(task_id)
        emit_task_event(scheduler.events, EventTypes.TASK_STARTED, task_id, {"execution_id": execution_id})

        try:
            record = await scheduler.executor.execute(task)
        except Exception as e:
            logger.exception(f"Executor raised for task {task_id}: {e}")
            record = ExecutionRecord(
                task_id=task_id,
                started_at_ms=started.started_at_ms,
                completed_at_ms=now_ms(),
                status=RunStatus.FAILED,
                error=f"Run failed: {e}",
            )
            record.duration_ms = record.completed_at_ms - record.started_at_ms
        finally:
            scheduler.state.in_flight.discard(task_id)

        record.id = execution_id
        await scheduler.store.update_execution(execution_id, record)

        try:
            next_run_ms = compute_next_run_at_ms(task.cron, task.timezone)
        except ValueError as e:
            logger.error(f"Cannot compute next run for task {task_id}: {e}")
            next_run_ms = None
        await scheduler.store.record_run(task_id, record.completed_at_ms or now_ms(), next_run_ms)

        event = EventTypes.TASK_COMPLETED if record.status == RunStatus.COMPLETED else EventTypes.TASK_FAILED
        emit_task_event(scheduler.events, event, task_id, {
            "execution_id": execution_id,
            "duration_ms": record.duration_ms,
            "error": record.error,
        })
        return record
