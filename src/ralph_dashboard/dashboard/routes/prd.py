"""PRD route handlers.

GET/POST/PUT /api/prd read the backlog, add a story and edit a story.
The LLM-assisted operations share one shape: POST asks the agent for
suggestions, PUT applies the parts the user accepted.

    /api/prd/refine    descriptions and acceptance criteria
    /api/prd/generate  new stories from a feature description
    /api/prd/story     one story edit plus consistency updates
    /api/prd/align     modifications, additions and removals against a vision
"""

import logging
from typing import Any

from pydantic.alias_generators import to_snake
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ralph_dashboard.core.models import PRD, Story, derive_story_status
from ralph_dashboard.dashboard.schemas import (
    DEFAULT_VERSION,
    AlignRequest,
    ApplyAlignRequest,
    ApplyGenerateRequest,
    ApplyRefineRequest,
    ApplyStoryEditRequest,
    CreateStoryRequest,
    GenerateRequest,
    RefineRequest,
    StoryEditRequest,
    UpdateStoryRequest,
    parse_body,
)
from ralph_dashboard.prd.progress import (
    blocked_stories,
    epic_progress,
    phase_progress,
    total_stats,
)

logger = logging.getLogger(__name__)


def story_json(story: Story, current_story: str | None) -> dict[str, Any]:
    """Story record with its derived status."""
    return {
        **story.model_dump(mode="json"),
        "status": derive_story_status(story, current_story).value,
    }


def prd_json(prd: PRD, current_story: str | None, metrics: dict[str, Any]) -> dict[str, Any]:
    body = prd.model_dump(mode="json")
    body["stories"] = [story_json(s, current_story) for s in prd.stories]
    body["progress"] = {
        "phases": [p.model_dump() for p in phase_progress(prd)],
        "epics": [e.model_dump() for e in epic_progress(prd)],
        "totals": total_stats(prd, metrics).model_dump(),
        "blocked": [b.model_dump() for b in blocked_stories(prd)],
    }
    return body


async def _emit_story(request: Request, story: Story) -> None:
    server = request.app.state.server
    current = server.stores.run_state.get().current_story
    await server.sse_broadcaster.broadcast_event("story_update", story_json(story, current))


# =============================================================================
# Story CRUD
# =============================================================================


async def get_prd(request: Request) -> JSONResponse:
    """GET /api/prd?version= - Backlog of a version (``all`` combines versions)."""
    server = request.app.state.server
    version = request.query_params.get("version") or DEFAULT_VERSION
    prd = server.stores.prd.get_prd(version)
    current = server.stores.run_state.get().current_story
    return JSONResponse(prd_json(prd, current, server.stores.metrics.summary()))


async def create_story(request: Request) -> JSONResponse:
    """POST /api/prd - Add a story, numbered after the last one in its epic."""
    server = request.app.state.server
    body: CreateStoryRequest = await parse_body(request, CreateStoryRequest)
    story = server.stores.stories.add(
        body.version,
        body.title,
        body.phase,
        body.epic,
        intent=body.intent,
        description=body.description,
        acceptance=body.acceptance,
        depends_on=body.depends_on,
        tags=body.tags,
        priority=body.priority,
    )
    logger.info("Created story %s", story.id)
    await _emit_story(request, story)
    return JSONResponse({"success": True, "story": story.model_dump(mode="json")})


async def update_story(request: Request) -> JSONResponse:
    """PUT /api/prd - {storyId, updates}. Update keys may be camelCase."""
    server = request.app.state.server
    body: UpdateStoryRequest = await parse_body(request, UpdateStoryRequest)
    story = server.stores.stories.resolve(body.story_id, body.version)
    changes = {to_snake(key): value for key, value in body.updates.items()}
    story = server.stores.stories.update(story.id, changes)
    await _emit_story(request, story)
    return JSONResponse({"success": True, "story": story.model_dump(mode="json")})


# =============================================================================
# LLM-assisted operations
# =============================================================================


async def suggest_refine(request: Request) -> JSONResponse:
    """POST /api/prd/refine - Suggested descriptions and acceptance criteria."""
    ops = request.app.state.server.prd_operations
    body: RefineRequest = await parse_body(request, RefineRequest)
    return JSONResponse(await ops.suggest_refinements(body.version))


async def apply_refine(request: Request) -> JSONResponse:
    """PUT /api/prd/refine - Apply accepted refinements."""
    ops = request.app.state.server.prd_operations
    body: ApplyRefineRequest = await parse_body(request, ApplyRefineRequest)
    return JSONResponse(ops.apply_refinements(body.version, body.refinements))


async def suggest_generate(request: Request) -> JSONResponse:
    """POST /api/prd/generate - Suggested stories for a feature description."""
    ops = request.app.state.server.prd_operations
    body: GenerateRequest = await parse_body(request, GenerateRequest)
    return JSONResponse(await ops.suggest_stories(body.version, body.description))


async def apply_generate(request: Request) -> JSONResponse:
    """PUT /api/prd/generate - Create the accepted stories."""
    ops = request.app.state.server.prd_operations
    body: ApplyGenerateRequest = await parse_body(request, ApplyGenerateRequest)
    return JSONResponse(ops.apply_generated(body.version, body.stories, body.new_epic))


async def suggest_story_edit(request: Request) -> JSONResponse:
    """POST /api/prd/story - Suggested edit of one story and its related stories."""
    ops = request.app.state.server.prd_operations
    body: StoryEditRequest = await parse_body(request, StoryEditRequest)
    return JSONResponse(
        await ops.suggest_story_edit(body.version, body.story_id, body.requested_changes)
    )


async def apply_story_edit(request: Request) -> JSONResponse:
    """PUT /api/prd/story - Apply the accepted story edit."""
    ops = request.app.state.server.prd_operations
    body: ApplyStoryEditRequest = await parse_body(request, ApplyStoryEditRequest)
    return JSONResponse(
        ops.apply_story_edit(body.version, body.story_id, body.target, body.related_updates)
    )


async def suggest_align(request: Request) -> JSONResponse:
    """POST /api/prd/align - Alignment suggestions against a product vision."""
    ops = request.app.state.server.prd_operations
    body: AlignRequest = await parse_body(request, AlignRequest)
    return JSONResponse(
        await ops.suggest_alignment(body.version, body.vision, body.scope, body.scope_id)
    )


async def apply_align(request: Request) -> JSONResponse:
    """PUT /api/prd/align - Apply accepted modifications, additions and removals."""
    ops = request.app.state.server.prd_operations
    body: ApplyAlignRequest = await parse_body(request, ApplyAlignRequest)
    return JSONResponse(
        ops.apply_alignment(body.version, body.modifications, body.new_stories, body.removals)
    )


routes = [
    Route("/api/prd", get_prd, methods=["GET"]),
    Route("/api/prd", create_story, methods=["POST"]),
    Route("/api/prd", update_story, methods=["PUT"]),
    Route("/api/prd/refine", suggest_refine, methods=["POST"]),
    Route("/api/prd/refine", apply_refine, methods=["PUT"]),
    Route("/api/prd/generate", suggest_generate, methods=["POST"]),
    Route("/api/prd/generate", apply_generate, methods=["PUT"]),
    Route("/api/prd/story", suggest_story_edit, methods=["POST"]),
    Route("/api/prd/story", apply_story_edit, methods=["PUT"]),
    Route("/api/prd/align", suggest_align, methods=["POST"]),
    Route("/api/prd/align", apply_align, methods=["PUT"]),
]
