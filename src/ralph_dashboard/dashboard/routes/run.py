"""Execution route handlers.

GET /api/run returns the execution status of a version; POST /api/run
starts, continues, stops or resets execution.
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.dashboard.schemas import DEFAULT_VERSION, RunRequest, parse_body
from ralph_dashboard.execution import ExecutionConfig

logger = logging.getLogger(__name__)


async def get_run(request: Request) -> JSONResponse:
    """GET /api/run?version= - Run state, current/next story and progress."""
    server = request.app.state.server
    version = request.query_params.get("version") or DEFAULT_VERSION
    return JSONResponse(server.orchestrator.status(version))


async def post_run(request: Request) -> JSONResponse:
    """POST /api/run - start|continue|stop|reset.

    start and continue block until the session ends (one iteration, or
    until auto mode halts) and return the RunResult.
    """
    server = request.app.state.server
    orchestrator = server.orchestrator
    body: RunRequest = await parse_body(request, RunRequest)

    if body.action == "stop":
        state = await orchestrator.stop()
        return JSONResponse({"status": "stopped", "state": state.model_dump(mode="json")})

    if body.action == "reset":
        state = await orchestrator.reset()
        return JSONResponse({"status": "reset", "state": state.model_dump(mode="json")})

    overrides = body.config.model_dump(exclude_none=True) if body.config else None
    config = ExecutionConfig.from_settings(orchestrator.settings, overrides)
    logger.info("Run %s requested for %s", body.action, body.version)
    result = await orchestrator.run(body.version, config, gate_response=body.gate_response)
    return JSONResponse(result.model_dump(mode="json"))


routes = [
    Route("/api/run", get_run, methods=["GET"]),
    Route("/api/run", post_run, methods=["POST"]),
]
