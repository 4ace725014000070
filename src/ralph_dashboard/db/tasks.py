"""Task Store: records for async LLM operations.

Tasks move queued -> running -> complete | failed. Only one task runs at a
time; TaskQueue (ralph_dashboard.tasks.queue) drives the transitions.
Finished tasks can be marked read and soft-deleted from the UI list.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

from ralph_dashboard.core.exceptions import NotFoundError, ValidationError
from ralph_dashboard.core.models import Task
from ralph_dashboard.core.types import TaskStatus, TaskType
from ralph_dashboard.db.database import Database, from_json, now_iso, to_json

logger = logging.getLogger(__name__)

# Finished tasks kept by cleanup()
DEFAULT_KEEP = 50

_FINISHED = (TaskStatus.COMPLETE.value, TaskStatus.FAILED.value)


class TaskStore:
    """CRUD and lifecycle operations over the tasks table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        task_type: TaskType | str,
        version: str,
        params: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> Task:
        """Create a queued task.

        Raises:
            ValidationError: If task_type is unknown.

        """
        try:
            kind = TaskType(task_type)
        except ValueError as e:
            raise ValidationError(f"Invalid task type: {task_type}", field="type") from e
        task_id = uuid.uuid4().hex
        self.db.execute(
            "INSERT INTO tasks (id, type, status, version, params, context, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (task_id, kind.value, TaskStatus.QUEUED.value, version, to_json(params or {}),
             to_json(context) if context is not None else None, now_iso()),
        )
        logger.info("Queued %s task %s for %s", kind.value, task_id, version)
        return self.require(task_id)

    def get(self, task_id: str) -> Task | None:
        row = self.db.fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row is not None else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def list(
        self,
        version: str | None = None,
        status: TaskStatus | str | None = None,
        include_deleted: bool = False,
    ) -> list[Task]:
        """List tasks newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if version is not None:
            clauses.append("version = ?")
            params.append(version)
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        return [self._row_to_task(r) for r in self.db.fetchall(sql, params)]

    def get_active(self) -> Task | None:
        """The running task, if any."""
        row = self.db.fetchone(
            "SELECT * FROM tasks WHERE status = ? LIMIT 1", (TaskStatus.RUNNING.value,)
        )
        return self._row_to_task(row) if row is not None else None

    def get_next(self) -> Task | None:
        """Oldest queued task."""
        row = self.db.fetchone(
            "SELECT * FROM tasks WHERE status = ? ORDER BY created_at, rowid LIMIT 1",
            (TaskStatus.QUEUED.value,),
        )
        return self._row_to_task(row) if row is not None else None

    def start(self, task_id: str) -> Task:
        """Move a queued task to running.

        Raises:
            ValidationError: If the task is not queued or another task runs.

        """
        with self.db.transaction() as conn:
            task = self.require(task_id)
            if task.status != TaskStatus.QUEUED:
                raise ValidationError(f"Task {task_id} is {task.status.value}, not queued")
            active = self.get_active()
            if active is not None:
                raise ValidationError(f"Task {active.id} is already running")
            conn.execute(
                "UPDATE tasks SET status = ?, started_at = ? WHERE id = ?",
                (TaskStatus.RUNNING.value, now_iso(), task_id),
            )
        return self.require(task_id)

    def complete(self, task_id: str, result: Any) -> Task:
        self.db.execute(
            "UPDATE tasks SET status = ?, result = ?, error = NULL, completed_at = ? WHERE id = ?",
            (TaskStatus.COMPLETE.value, to_json(result), now_iso(), task_id),
        )
        logger.info("Task %s complete", task_id)
        return self.require(task_id)

    def fail(self, task_id: str, error: str) -> Task:
        self.db.execute(
            "UPDATE tasks SET status = ?, error = ?, completed_at = ? WHERE id = ?",
            (TaskStatus.FAILED.value, error, now_iso(), task_id),
        )
        logger.warning("Task %s failed: %s", task_id, error)
        return self.require(task_id)

    def delete(self, task_id: str) -> None:
        """Hard-delete a task record."""
        if not self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,)):
            raise NotFoundError(f"Task {task_id} not found")

    def soft_delete(self, task_id: str) -> Task:
        """Hide a task from list() without losing it."""
        self.require(task_id)
        self.db.execute("UPDATE tasks SET deleted_at = ? WHERE id = ?", (now_iso(), task_id))
        return self.require(task_id)

    def restore(self, task_id: str) -> Task:
        self.require(task_id)
        self.db.execute("UPDATE tasks SET deleted_at = NULL WHERE id = ?", (task_id,))
        return self.require(task_id)

    def mark_read(self, task_id: str) -> Task:
        self.require(task_id)
        self.db.execute(
            "UPDATE tasks SET read_at = COALESCE(read_at, ?) WHERE id = ?", (now_iso(), task_id)
        )
        return self.require(task_id)

    def mark_all_read(self, version: str | None = None) -> int:
        """Mark every finished task read. Returns tasks updated."""
        sql = "UPDATE tasks SET read_at = ? WHERE read_at IS NULL AND status IN (?, ?)"
        params: list[Any] = [now_iso(), *_FINISHED]
        if version is not None:
            sql += " AND version = ?"
            params.append(version)
        return self.db.execute(sql, params)

    def unread_count(self, version: str | None = None) -> int:
        sql = (
            "SELECT COUNT(*) AS n FROM tasks WHERE read_at IS NULL AND deleted_at IS NULL "
            "AND status IN (?, ?)"
        )
        params: list[Any] = list(_FINISHED)
        if version is not None:
            sql += " AND version = ?"
            params.append(version)
        row = self.db.fetchone(sql, params)
        return int(row["n"]) if row is not None else 0

    def clear_finished(self, version: str | None = None) -> int:
        """Soft-delete every finished task. Returns tasks cleared."""
        sql = "UPDATE tasks SET deleted_at = ? WHERE deleted_at IS NULL AND status IN (?, ?)"
        params: list[Any] = [now_iso(), *_FINISHED]
        if version is not None:
            sql += " AND version = ?"
            params.append(version)
        return self.db.execute(sql, params)

    def cleanup(self, keep: int = DEFAULT_KEEP) -> int:
        """Delete finished tasks beyond the newest ``keep``."""
        removed = self.db.execute(
            "DELETE FROM tasks WHERE status IN (?, ?) AND id NOT IN ("
            "SELECT id FROM tasks WHERE status IN (?, ?) "
            "ORDER BY completed_at DESC, rowid DESC LIMIT ?)",
            (*_FINISHED, *_FINISHED, keep),
        )
        if removed:
            logger.debug("Removed %d old task(s)", removed)
        return removed

    def recover_interrupted(self) -> int:
        """Fail tasks left running by a previous process."""
        return self.db.execute(
            "UPDATE tasks SET status = ?, error = ?, completed_at = ? WHERE status = ?",
            (TaskStatus.FAILED.value, "Interrupted by server restart", now_iso(),
             TaskStatus.RUNNING.value),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            type=TaskType(row["type"]),
            status=TaskStatus(row["status"]),
            version=row["version"],
            params=from_json(row["params"], {}),
            context=from_json(row["context"]),
            result=from_json(row["result"]),
            error=row["error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            read_at=row["read_at"],
            deleted_at=row["deleted_at"],
        )
