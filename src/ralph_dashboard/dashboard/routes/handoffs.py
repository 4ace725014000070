"""Handoff route handlers.

GET /api/handoffs?storyId=[&agent=] reads the pipeline of a story;
POST /api/handoffs creates, accepts or rejects a handoff.
"""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.core.exceptions import ValidationError
from ralph_dashboard.dashboard.schemas import (
    AcceptHandoff,
    CreateHandoff,
    HandoffRequest,
    parse_body,
)


async def get_handoffs(request: Request) -> JSONResponse:
    """GET /api/handoffs - Pending handoffs for an agent, or the story's pipeline state."""
    server = request.app.state.server
    story_id = request.query_params.get("storyId")
    agent = request.query_params.get("agent")
    if not story_id:
        raise ValidationError("storyId is required", field="storyId")

    if agent:
        pending = server.stores.handoffs.get_pending(story_id, agent)
        return JSONResponse({"handoff": pending[0].model_dump(mode="json") if pending else None})
    return JSONResponse(server.stores.handoffs.current_state(story_id))


async def post_handoffs(request: Request) -> JSONResponse:
    """POST /api/handoffs - {action: create|accept|reject, ...}.

    reject also creates the return handoff from the rejecting agent back to
    the sender, and responds with that return handoff.
    """
    server = request.app.state.server
    pipeline = server.stores.handoffs
    body = await parse_body(request, HandoffRequest)

    if isinstance(body, CreateHandoff):
        handoff = pipeline.create(body.story_id, body.from_agent, body.to_agent, body.payload)
    elif isinstance(body, AcceptHandoff):
        handoff = pipeline.accept(body.handoff_id, body.payload)
    else:
        rejected, handoff = pipeline.reject_and_return(body.handoff_id, body.reason)
        return JSONResponse(
            {
                "success": True,
                "handoff": handoff.model_dump(mode="json"),
                "rejected": rejected.model_dump(mode="json"),
            }
        )
    return JSONResponse({"success": True, "handoff": handoff.model_dump(mode="json")})


routes = [
    Route("/api/handoffs", get_handoffs, methods=["GET"]),
    Route("/api/handoffs", post_handoffs, methods=["POST"]),
]
