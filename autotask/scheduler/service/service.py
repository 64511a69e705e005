"""Task scheduler service.

The scheduler is an explicit object built once at process start and
handed to whatever needs to trigger runs (the API, tests, scripts).
"""
from __future__ import annotations

import asyncio

from loguru import logger

from ..errors import RegistrationError, TaskNotFoundError
from ..models import Task
from ..schedule import compute_next_run_at_ms, is_valid_timezone, validate_cron_expression
from ..types import ExecutionRecord, SchedulerStatus
from . import timer
from .events import EventEmitter, EventTypes, emit_task_event
from .state import SchedulerState, TaskRunner
from .store import TaskStore

logger = logger.bind(module="scheduler.service")


class TaskScheduler:
    """Owns one timer per approved and enabled task."""

    def __init__(
        self,
        store: TaskStore,
        executor: TaskRunner,
        events: EventEmitter | None = None,
    ):
        """Initialize scheduler.

        Args:
            store: Task persistence
            executor: Runs a task and returns its execution record
            events: Event emitter (a fresh one by default)
        """
        self.store = store
        self.executor = executor
        self.events = events or EventEmitter()
        self.state = SchedulerState()

    async def start(self) -> None:
        """Open the store and register every approved, enabled task."""
        if self.state.running:
            logger.warning("Scheduler already running")
            return

        await self.store.initialize()
        self.state.running = True

        tasks = await self.store.list_enabled_approved()
        registered = 0
        for task in tasks:
            try:
                await self.register_task(task.id)
                registered += 1
            except RegistrationError as e:
                logger.error(f"Could not register task {task.id}: {e}")

        emit_task_event(self.events, EventTypes.SCHEDULER_STARTED, "", {"registered": registered})
        logger.info(f"Scheduler started with {registered}/{len(tasks)} tasks registered")

    async def stop(self) -> None:
        """Cancel every timer, let runs in flight finish, close the store."""
        if not self.state.running:
            return

        timers = list(self.state.timers.values())
        for task_id in list(self.state.timers):
            timer.disarm_timer(self, task_id)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

        runs = list(self.state.runs)
        if runs:
            logger.info(f"Waiting for {len(runs)} run(s) in flight")
            await asyncio.gather(*runs, return_exceptions=True)

        await self.store.close()
        self.state.reset()

        emit_task_event(self.events, EventTypes.SCHEDULER_STOPPED, "")
        logger.info("Scheduler stopped")

    # ============== Timers ==============

    async def register_task(self, task_id: str) -> Task:
        """Give a task a timer, replacing any existing one.

        Args:
            task_id: ID of the task

        Returns:
            The task with its recomputed ``next_run_at_ms``

        Raises:
            TaskNotFoundError: If the task does not exist
            RegistrationError: If its cron expression or timezone is invalid
        """
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if not validate_cron_expression(task.cron):
            raise RegistrationError(f"Invalid cron expression for task {task_id}: {task.cron!r}")
        if not is_valid_timezone(task.timezone):
            raise RegistrationError(f"Invalid timezone for task {task_id}: {task.timezone!r}")

        timer.arm_timer(self, task)

        task.next_run_at_ms = compute_next_run_at_ms(task.cron, task.timezone)
        await self.store.update_next_run(task_id, task.next_run_at_ms)

        emit_task_event(self.events, EventTypes.TASK_REGISTERED, task_id, {
            "next_run_at_ms": task.next_run_at_ms,
        })
        logger.info(f"Registered task {task_id} ({task.cron} {task.timezone}), next run {task.next_run_at_ms}")
        return task

    def unregister_task(self, task_id: str) -> bool:
        """Stop a task's timer. A run already in flight is not cancelled.

        Returns:
            True if a timer existed
        """
        removed = timer.disarm_timer(self, task_id)
        if removed:
            emit_task_event(self.events, EventTypes.TASK_UNREGISTERED, task_id)
            logger.info(f"Unregistered task {task_id}")
        return removed

    def has_timer(self, task_id: str) -> bool:
        return task_id in self.state.timers

    # ============== Execution ==============

    async def execute_task(self, task_id: str, force: bool = False) -> ExecutionRecord | None:
        """Run a task now.

        Timer fires and manual triggers both come through here. The run
        is tracked and shielded: cancelling the caller does not cancel it,
        and ``stop()`` waits for it before closing the store.

        Args:
            task_id: ID of the task
            force: Run even if the task is disabled

        Returns:
            The execution record, or None if the run was skipped
        """
        run = asyncio.create_task(timer.run_task(self, task_id, force=force), name=f"run:{task_id}")
        self.state.track_run(run)
        return await asyncio.shield(run)

    def is_running(self, task_id: str) -> bool:
        return task_id in self.state.in_flight

    def status(self) -> SchedulerStatus:
        """Get scheduler status."""
        return SchedulerStatus(
            running=self.state.running,
            active_timers=len(self.state.timers),
            task_ids=sorted(self.state.timers),
            in_flight=sorted(self.state.in_flight),
        )
