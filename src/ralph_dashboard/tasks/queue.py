"""Async task queue: one running task at a time.

Submitting a task stores it as queued and starts it when nothing else runs.
Handlers run as background asyncio tasks; completing or failing a task
starts the next queued one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from ralph_dashboard.core.exceptions import NotFoundError, RalphDashboardError
from ralph_dashboard.core.models import Task
from ralph_dashboard.core.types import TaskType
from ralph_dashboard.db import Stores
from ralph_dashboard.execution.orchestrator import EventSink
from ralph_dashboard.prd.operations import PRDOperations
from ralph_dashboard.tasks.handlers import HANDLERS, TaskHandler

logger = logging.getLogger(__name__)


class TaskQueue:
    """Serial worker over the task store.

    Args:
        stores: Database stores.
        ops: PRD operations the handlers call.
        events: Receives ``task_update`` events.
        handlers: Handler per task type (HANDLERS by default).

    """

    def __init__(
        self,
        stores: Stores,
        ops: PRDOperations,
        events: EventSink | None = None,
        handlers: dict[TaskType, TaskHandler] | None = None,
    ) -> None:
        self.stores = stores
        self.ops = ops
        self.events = events
        self.handlers = handlers or HANDLERS
        self._current: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    async def submit(
        self,
        task_type: TaskType | str,
        version: str,
        params: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> Task:
        """Queue a task and start it if the worker is free."""
        if self.stores.prd.get_version(version) is None:
            raise NotFoundError(f"Version {version} not found")
        task = self.stores.tasks.create(task_type, version, params, context)
        await self._emit(task)
        await self.process_next()
        return self.stores.tasks.require(task.id)

    async def process_next(self) -> Task | None:
        """Start the oldest queued task unless one is running."""
        if self.busy or self.stores.tasks.get_active() is not None:
            return None
        queued = self.stores.tasks.get_next()
        if queued is None:
            return None
        task = self.stores.tasks.start(queued.id)
        await self._emit(task)
        self._current = asyncio.create_task(self._execute(task), name=f"task-{task.id}")
        return task

    async def wait_idle(self) -> None:
        """Wait until no task is running or queued."""
        while self._current is not None:
            current = self._current
            await current
            if self._current is current:
                self._current = None

    async def shutdown(self) -> None:
        """Cancel the running task; it is failed on next startup."""
        if self._current is not None and not self._current.done():
            self._current.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._current
        self._current = None

    async def _execute(self, task: Task) -> None:
        handler = self.handlers.get(task.type)
        try:
            if handler is None:
                raise RalphDashboardError(f"No handler for task type {task.type.value}")
            result = await handler(self.ops, task)
        except RalphDashboardError as e:
            finished = self.stores.tasks.fail(task.id, str(e))
        except Exception as e:
            logger.exception("Task %s crashed", task.id)
            finished = self.stores.tasks.fail(task.id, str(e) or type(e).__name__)
        else:
            finished = self.stores.tasks.complete(task.id, result)

        self.stores.tasks.cleanup()
        await self._emit(finished)
        self._current = None
        await self.process_next()

    async def _emit(self, task: Task) -> None:
        if self.events is not None:
            await self.events.broadcast_event("task_update", task.model_dump(mode="json"))
