"""SQLite persistence for tasks and their run history."""
import json
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiosqlite
from loguru import logger

from ..models import Task
from ..schedule import now_ms
from ..types import ExecutionRecord, RunStatus, StepResult, TaskStats, TaskStatus

logger = logger.bind(module="scheduler.store")


class TaskStore:
    """SQLite-based task persistence.

    Tasks live in ``scheduled_tasks`` with their steps and personalization
    stored as JSON; every run is a row in ``task_executions``.
    """

    def __init__(self, db_path: str | Path):
        """Initialize task store.

        Args:
            db_path: Path to SQLite database, or ":memory:"
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._connection: aiosqlite.Connection | None = None

    @property
    def initialized(self) -> bool:
        return self._connection is not None

    def _conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("TaskStore not initialized")
        return self._connection

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        if self._connection:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        await self._connection.execute("PRAGMA foreign_keys = ON")

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT DEFAULT '',
                cron TEXT NOT NULL,
                timezone TEXT NOT NULL DEFAULT 'UTC',
                steps TEXT NOT NULL DEFAULT '[]',
                personalization TEXT NOT NULL DEFAULT '{}',
                enabled INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending_approval',
                last_run_at_ms INTEGER,
                next_run_at_ms INTEGER,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
        """)
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_owner ON scheduled_tasks(owner)"
        )
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_status ON scheduled_tasks(status, enabled)"
        )

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS task_executions (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                started_at_ms INTEGER NOT NULL,
                completed_at_ms INTEGER,
                status TEXT NOT NULL DEFAULT 'running',
                steps TEXT NOT NULL DEFAULT '[]',
                error TEXT,
                duration_ms INTEGER DEFAULT 0,
                FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id) ON DELETE CASCADE
            )
        """)
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_task ON task_executions(task_id, started_at_ms)"
        )

        await self._connection.commit()
        logger.info(f"Task store initialized at {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ============== Tasks ==============

    async def save(self, task: Task) -> None:
        """Insert or update a task."""
        conn = self._conn()
        task.updated_at_ms = now_ms()

        await conn.execute(
            """
            INSERT INTO scheduled_tasks (
                id, owner, name, description, cron, timezone, steps,
                personalization, enabled, status, last_run_at_ms,
                next_run_at_ms, created_at_ms, updated_at_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner = excluded.owner,
                name = excluded.name,
                description = excluded.description,
                cron = excluded.cron,
                timezone = excluded.timezone,
                steps = excluded.steps,
                personalization = excluded.personalization,
                enabled = excluded.enabled,
                status = excluded.status,
                last_run_at_ms = excluded.last_run_at_ms,
                next_run_at_ms = excluded.next_run_at_ms,
                updated_at_ms = excluded.updated_at_ms
            """,
            (
                task.id,
                task.owner,
                task.name,
                task.description,
                task.cron,
                task.timezone,
                json.dumps([s.to_dict() for s in task.steps], ensure_ascii=False),
                json.dumps(task.personalization.to_dict(), ensure_ascii=False),
                1 if task.enabled else 0,
                task.status.value,
                task.last_run_at_ms,
                task.next_run_at_ms,
                task.created_at_ms,
                task.updated_at_ms,
            ),
        )
        await conn.commit()

    async def get(self, task_id: str) -> Task | None:
        """Load a task by id."""
        async with self._conn().execute(
            "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_task(row, cursor.description)
        return None

    async def delete(self, task_id: str) -> bool:
        """Delete a task and its run history."""
        conn = self._conn()
        await conn.execute("DELETE FROM task_executions WHERE task_id = ?", (task_id,))
        result = await conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
        await conn.commit()
        return result.rowcount > 0

    async def list_tasks(self, owner: str | None = None, limit: int = 100) -> list[Task]:
        """List tasks, newest first."""
        query = "SELECT * FROM scheduled_tasks"
        params: list[Any] = []
        if owner:
            query += " WHERE owner = ?"
            params.append(owner)
        query += " ORDER BY created_at_ms DESC LIMIT ?"
        params.append(limit)

        async with self._conn().execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_task(row, cursor.description) for row in rows]

    async def list_enabled_approved(self) -> list[Task]:
        """Tasks that should hold a timer."""
        async with self._conn().execute(
            "SELECT * FROM scheduled_tasks WHERE enabled = 1 AND status = ?",
            (TaskStatus.APPROVED.value,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_task(row, cursor.description) for row in rows]

    async def record_run(
        self,
        task_id: str,
        last_run_at_ms: int | None,
        next_run_at_ms: int | None,
    ) -> None:
        """Persist run metadata without touching the rest of the task."""
        conn = self._conn()
        await conn.execute(
            """
            UPDATE scheduled_tasks
            SET last_run_at_ms = ?, next_run_at_ms = ?, updated_at_ms = ?
            WHERE id = ?
            """,
            (last_run_at_ms, next_run_at_ms, now_ms(), task_id),
        )
        await conn.commit()

    async def update_next_run(self, task_id: str, next_run_at_ms: int | None) -> None:
        conn = self._conn()
        await conn.execute(
            "UPDATE scheduled_tasks SET next_run_at_ms = ?, updated_at_ms = ? WHERE id = ?",
            (next_run_at_ms, now_ms(), task_id),
        )
        await conn.commit()

    def _row_to_task(self, row: Any, description: Any) -> Task:
        """Convert a database row to a Task."""
        columns = [col[0] for col in description]
        data = dict(zip(columns, row))

        data["steps"] = json.loads(data.get("steps") or "[]")
        data["personalization"] = json.loads(data.get("personalization") or "{}")
        return Task.from_dict(data)

    # ============== Executions (Run History) ==============

    async def insert_execution(self, record: ExecutionRecord) -> str:
        """Insert an execution record and return its id."""
        conn = self._conn()
        if not record.id:
            record.id = f"run_{uuid4().hex[:12]}"

        await conn.execute(
            """
            INSERT INTO task_executions (
                id, task_id, started_at_ms, completed_at_ms,
                status, steps, error, duration_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.task_id,
                record.started_at_ms,
                record.completed_at_ms,
                record.status.value,
                self._dump_steps(record.steps),
                record.error,
                record.duration_ms,
            ),
        )
        await conn.commit()
        return record.id

    async def update_execution(self, execution_id: str, record: ExecutionRecord) -> None:
        """Finalize an execution with the executor's outcome.

        Only rows still marked ``running`` are updated, so a finalized
        record is never rewritten.
        """
        conn = self._conn()
        await conn.execute(
            """
            UPDATE task_executions
            SET completed_at_ms = ?, status = ?, steps = ?, error = ?, duration_ms = ?
            WHERE id = ? AND status = ?
            """,
            (
                record.completed_at_ms,
                record.status.value,
                self._dump_steps(record.steps),
                record.error,
                record.duration_ms,
                execution_id,
                RunStatus.RUNNING.value,
            ),
        )
        await conn.commit()

    async def get_executions(self, task_id: str, limit: int = 20) -> list[ExecutionRecord]:
        """Most recent executions of a task, newest first."""
        async with self._conn().execute(
            """
            SELECT * FROM task_executions
            WHERE task_id = ?
            ORDER BY started_at_ms DESC
            LIMIT ?
            """,
            (task_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
            columns = [col[0] for col in cursor.description]

        records = []
        for row in rows:
            data = dict(zip(columns, row))
            records.append(ExecutionRecord(
                id=data["id"],
                task_id=data["task_id"],
                started_at_ms=data["started_at_ms"],
                completed_at_ms=data.get("completed_at_ms"),
                status=RunStatus(data.get("status", "running")),
                duration_ms=data.get("duration_ms") or 0,
                steps=[StepResult.from_dict(s) for s in json.loads(data.get("steps") or "[]")],
                error=data.get("error"),
            ))
        return records

    async def get_task_stats(self, task_id: str) -> TaskStats:
        """Aggregate run statistics for a task."""
        stats = TaskStats(task_id=task_id)

        query = """
            SELECT
                COUNT(*),
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END),
                AVG(CASE WHEN status = 'completed' THEN duration_ms END)
            FROM task_executions
            WHERE task_id = ?
        """
        async with self._conn().execute(query, (task_id,)) as cursor:
            row = await cursor.fetchone()
            if row:
                stats.total = row[0] or 0
                stats.completed = row[1] or 0
                stats.failed = row[2] or 0
                stats.running = row[3] or 0
                stats.avg_duration_ms = float(row[4] or 0)

        last_run_query = """
            SELECT started_at_ms, status FROM task_executions
            WHERE task_id = ?
            ORDER BY started_at_ms DESC
            LIMIT 1
        """
        async with self._conn().execute(last_run_query, (task_id,)) as cursor:
            row = await cursor.fetchone()
            if row:
                stats.last_run_at_ms = row[0]
                stats.last_status = row[1]

        return stats

    @staticmethod
    def _dump_steps(steps: list[StepResult]) -> str:
        return json.dumps([s.to_dict() for s in steps], ensure_ascii=False, default=str)
