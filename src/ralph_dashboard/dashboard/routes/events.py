"""SSE route handler.

GET /api/events streams ``{type, data}`` frames for run_state, story_update,
metrics and task_update, plus heartbeats. A new connection gets a status
event and then the current run state; earlier events are not replayed.
"""

from collections.abc import AsyncGenerator

from starlette.requests import Request
from starlette.responses import Response, StreamingResponse
from starlette.routing import Route

from ralph_dashboard.dashboard.sse import EventType, SSEMessage


async def sse_events(request: Request) -> Response:
    """GET /api/events - SSE stream of dashboard events."""
    server = request.app.state.server

    async def event_generator() -> AsyncGenerator[str, None]:
        sent_state = False
        async for message in server.sse_broadcaster.subscribe():
            yield message
            if not sent_state:
                sent_state = True
                state = server.stores.run_state.get().model_dump(mode="json")
                yield SSEMessage(
                    event=EventType.RUN_STATE.value,
                    data={"type": EventType.RUN_STATE.value, "data": state},
                ).format()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


routes = [
    Route("/api/events", sse_events, methods=["GET"]),
]
