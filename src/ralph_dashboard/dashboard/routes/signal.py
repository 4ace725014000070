"""Signal route handlers (agent-facing).

The agent calls these with curl from inside its session to report that a
story is complete, blocked or still in progress.
"""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.dashboard.schemas import CompleteSignal, SignalRequest, parse_body
from ralph_dashboard.execution import handle_signal, signal_status


async def get_signal(request: Request) -> JSONResponse:
    """GET /api/signal[?storyId=] - Run state, or one story's flags."""
    server = request.app.state.server
    story_id = request.query_params.get("storyId")
    return JSONResponse(signal_status(server.stores, story_id))


async def post_signal(request: Request) -> JSONResponse:
    """POST /api/signal - {storyId, action: complete|blocked|progress, message?, prUrl?}."""
    server = request.app.state.server
    body = await parse_body(request, SignalRequest)
    result = await handle_signal(
        server.stores,
        body.story_id,
        body.action,
        message=body.message,
        pr_url=body.pr_url if isinstance(body, CompleteSignal) else None,
        events=server.sse_broadcaster,
    )
    return JSONResponse(result)


routes = [
    Route("/api/signal", get_signal, methods=["GET"]),
    Route("/api/signal", post_signal, methods=["POST"]),
]
