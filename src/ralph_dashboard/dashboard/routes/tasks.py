"""Async task route handlers.

Tasks run LLM operations in the background; the UI polls or listens for
``task_update`` events and applies the result with the matching PUT
/api/prd/* endpoint.
"""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.core.exceptions import ValidationError
from ralph_dashboard.core.types import TaskStatus
from ralph_dashboard.dashboard.schemas import CreateTaskRequest, TaskActionRequest, parse_body


def _status_filter(value: str | None) -> TaskStatus | None:
    if not value:
        return None
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status: {value}", field="status") from None


async def list_tasks(request: Request) -> JSONResponse:
    """GET /api/tasks?version=&status=&includeDeleted= - Tasks, newest first."""
    store = request.app.state.server.stores.tasks
    version = request.query_params.get("version") or None
    tasks = store.list(
        version=version,
        status=_status_filter(request.query_params.get("status")),
        include_deleted=request.query_params.get("includeDeleted") == "true",
    )
    return JSONResponse(
        {
            "tasks": [t.model_dump(mode="json") for t in tasks],
            "unread": store.unread_count(version),
        }
    )


async def create_task(request: Request) -> JSONResponse:
    """POST /api/tasks - {type, version, params} queues a task."""
    server = request.app.state.server
    body: CreateTaskRequest = await parse_body(request, CreateTaskRequest)
    task = await server.task_queue.submit(body.type, body.version, body.params, body.context)
    return JSONResponse({"task": task.model_dump(mode="json")})


async def get_task(request: Request) -> JSONResponse:
    """GET /api/tasks/{task_id}."""
    store = request.app.state.server.stores.tasks
    task = store.require(request.path_params["task_id"])
    return JSONResponse({"task": task.model_dump(mode="json")})


async def patch_task(request: Request) -> JSONResponse:
    """PATCH /api/tasks/{task_id} - {action: read|delete|restore}."""
    store = request.app.state.server.stores.tasks
    task_id = request.path_params["task_id"]
    body: TaskActionRequest = await parse_body(request, TaskActionRequest)
    if body.action == "read":
        task = store.mark_read(task_id)
    elif body.action == "delete":
        task = store.soft_delete(task_id)
    else:
        task = store.restore(task_id)
    return JSONResponse({"task": task.model_dump(mode="json")})


async def delete_task(request: Request) -> JSONResponse:
    """DELETE /api/tasks/{task_id} - Remove the record."""
    store = request.app.state.server.stores.tasks
    store.delete(request.path_params["task_id"])
    return JSONResponse({"deleted": True})


async def clear_tasks(request: Request) -> JSONResponse:
    """POST /api/tasks/clear?version= - Mark finished tasks read and hide them."""
    store = request.app.state.server.stores.tasks
    version = request.query_params.get("version") or None
    marked = store.mark_all_read(version)
    cleared = store.clear_finished(version)
    return JSONResponse({"marked": marked, "cleared": cleared})


routes = [
    Route("/api/tasks", list_tasks, methods=["GET"]),
    Route("/api/tasks", create_task, methods=["POST"]),
    Route("/api/tasks/clear", clear_tasks, methods=["POST"]),
    Route("/api/tasks/{task_id}", get_task, methods=["GET"]),
    Route("/api/tasks/{task_id}", patch_task, methods=["PATCH"]),
    Route("/api/tasks/{task_id}", delete_task, methods=["DELETE"]),
]
