"""Single-story route handlers."""

from pydantic.alias_generators import to_snake
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.core.exceptions import ValidationError
from ralph_dashboard.dashboard.routes.prd import story_json
from ralph_dashboard.dashboard.schemas import read_json


async def get_story(request: Request) -> JSONResponse:
    """GET /api/story/{story_id} - Story with status, checkpoints and pipeline."""
    stores = request.app.state.server.stores
    story = stores.stories.resolve(request.path_params["story_id"])
    current = stores.run_state.get().current_story
    return JSONResponse(
        {
            **story_json(story, current),
            "checkpoints": [c.model_dump(mode="json") for c in stores.checkpoints.list(story.id)],
            "pipeline": stores.handoffs.current_state(story.id),
        }
    )


async def patch_story(request: Request) -> JSONResponse:
    """PATCH /api/story/{story_id} - Partial update; keys may be camelCase."""
    server = request.app.state.server
    stores = server.stores
    body = await read_json(request)
    if not isinstance(body, dict):
        raise ValidationError("Body must be a JSON object")
    story = stores.stories.resolve(request.path_params["story_id"])
    story = stores.stories.update(story.id, {to_snake(k): v for k, v in body.items()})
    data = story_json(story, stores.run_state.get().current_story)
    await server.sse_broadcaster.broadcast_event("story_update", data)
    return JSONResponse(data)


routes = [
    Route("/api/story/{story_id}", get_story, methods=["GET"]),
    Route("/api/story/{story_id}", patch_story, methods=["PATCH"]),
]
