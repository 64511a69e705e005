"""State management for the scheduler service.

Contains the executor protocol and the runtime state of the timers.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Protocol

from ..models import Task
from ..types import ExecutionRecord


class TaskRunner(Protocol):
    """Protocol for task execution."""

    async def execute(self, task: Task) -> ExecutionRecord:
        """Run every step of a task and return the finalized record."""
        ...


@dataclass
class SchedulerState:
    """Runtime state of the scheduler."""
    running: bool = False

    # One timer per registered task id
    timers: dict[str, asyncio.Task] = field(default_factory=dict)

    # One lock per task id; held for the whole execution
    run_locks: dict[str, asyncio.Lock] = field(default_factory=dict)
    in_flight: set[str] = field(default_factory=set)

    # Executions still running; stop() drains them before closing the store
    runs: set[asyncio.Task] = field(default_factory=set)

    def run_lock(self, task_id: str) -> asyncio.Lock:
        lock = self.run_locks.get(task_id)
        if lock is None:
            lock = self.run_locks[task_id] = asyncio.Lock()
        return lock

    def track_run(self, run: asyncio.Task) -> asyncio.Task:
        self.runs.add(run)
        run.add_done_callback(self.runs.discard)
        return run

    def drop_run_lock(self, task_id: str) -> None:
        """Forget the run lock of a task unless a run holds it."""
        lock = self.run_locks.get(task_id)
        if lock is not None and not lock.locked():
            del self.run_locks[task_id]

    def reset(self) -> None:
        """Reset state to initial values."""
        self.running = False
        self.timers.clear()
        self.in_flight.clear()
        self.runs.clear()
        self.run_locks.clear()
