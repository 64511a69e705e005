"""Scheduler service package.

This package contains the core scheduler service components:
- state.py: Runtime state and the executor protocol
- store.py: SQLite persistence for tasks and run history
- ops.py: Task lifecycle operations (create, approve, update, delete)
- timer.py: Per-task timers and the run path
- events.py: Event system
"""
from .events import EventEmitter, EventTypes
from .service import TaskScheduler
from .store import TaskStore

__all__ = ["EventEmitter", "EventTypes", "TaskScheduler", "TaskStore"]
