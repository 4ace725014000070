"""Handlers that run an async task's agent call.

Each handler takes the task record and returns the JSON result stored on
it. Params use the API's camelCase keys.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from ralph_dashboard.core.exceptions import ValidationError
from ralph_dashboard.core.models import Task
from ralph_dashboard.core.types import TaskType
from ralph_dashboard.prd.operations import PRDOperations

TaskHandler = Callable[[PRDOperations, Task], Awaitable[Any]]


def _param(task: Task, key: str) -> str:
    value = task.params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required for {task.type.value} tasks", field=key)
    return value


async def run_refine(ops: PRDOperations, task: Task) -> Any:
    return await ops.suggest_refinements(task.version)


async def run_generate(ops: PRDOperations, task: Task) -> Any:
    return await ops.suggest_stories(task.version, _param(task, "description"))


async def run_story_edit(ops: PRDOperations, task: Task) -> Any:
    return await ops.suggest_story_edit(
        task.version, _param(task, "storyId"), _param(task, "requestedChanges")
    )


async def run_align(ops: PRDOperations, task: Task) -> Any:
    return await ops.suggest_alignment(
        task.version,
        _param(task, "vision"),
        scope=task.params.get("scope") or "version",
        scope_id=task.params.get("scopeId"),
    )


HANDLERS: dict[TaskType, TaskHandler] = {
    TaskType.REFINE: run_refine,
    TaskType.GENERATE: run_generate,
    TaskType.STORY_EDIT: run_story_edit,
    TaskType.ALIGN: run_align,
}
