"""Request body schemas for the dashboard API.

Bodies with an ``action`` field are discriminated unions: each action is
its own model, validated before dispatch, so an unknown action is a 400
naming ``action`` rather than a fall-through.

All models accept the API's camelCase keys (``storyId``, ``prUrl``) as well
as snake_case field names.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from starlette.requests import Request

from ralph_dashboard.core.exceptions import ValidationError
from ralph_dashboard.core.types import TaskType

DEFAULT_VERSION = "v0.1"


class ApiModel(BaseModel):
    """Base for request bodies."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =============================================================================
# Body parsing
# =============================================================================


def _error_field(error: dict[str, Any]) -> str | None:
    if error["type"] in ("union_tag_invalid", "union_tag_not_found"):
        discriminator = (error.get("ctx") or {}).get("discriminator", "")
        return discriminator.strip("'") or None
    names = [str(part) for part in error["loc"] if isinstance(part, str)]
    return names[-1] if names else None


def validate_body(schema: Any, data: Any) -> Any:
    """Validate request data against a model or adapter.

    Raises:
        ValidationError: Naming the first offending field.

    """
    adapter = schema if isinstance(schema, TypeAdapter) else TypeAdapter(schema)
    try:
        return adapter.validate_python(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = _error_field(first)
        message = f"{field}: {first['msg']}" if field else first["msg"]
        raise ValidationError(message, field=field) from None


async def read_json(request: Request) -> Any:
    """Decode the JSON body (an empty body reads as ``{}``).

    Raises:
        ValidationError: If the body is not valid JSON.

    """
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from None


async def parse_body(request: Request, schema: Any) -> Any:
    """Read and validate a request body in one step."""
    return validate_body(schema, await read_json(request))


# =============================================================================
# Run
# =============================================================================


class RunConfigBody(ApiModel):
    """Per-run overrides (baseBranch, maxIterations, claudeTimeout, ...)."""

    base_branch: str | None = None
    max_iterations: int | None = Field(default=None, ge=1)
    claude_timeout: int | None = Field(default=None, ge=1)
    auto_mode: bool | None = None
    single_story_id: str | None = None


class RunRequest(ApiModel):
    """POST /api/run."""

    version: str = DEFAULT_VERSION
    action: Literal["start", "continue", "stop", "reset"] = "start"
    config: RunConfigBody | None = None
    gate_response: str | None = None


# =============================================================================
# Signal
# =============================================================================


class _SignalBase(ApiModel):
    story_id: str = Field(min_length=1)
    message: str | None = None


class CompleteSignal(_SignalBase):
    action: Literal["complete"]
    pr_url: str | None = None


class BlockedSignal(_SignalBase):
    action: Literal["blocked"]


class ProgressSignal(_SignalBase):
    action: Literal["progress"]


SignalRequest = Annotated[
    CompleteSignal | BlockedSignal | ProgressSignal, Field(discriminator="action")
]


# =============================================================================
# Handoffs
# =============================================================================


class CreateHandoff(ApiModel):
    action: Literal["create"]
    story_id: str = Field(min_length=1)
    from_agent: str
    to_agent: str
    payload: dict[str, Any] = Field(default_factory=dict)


class AcceptHandoff(ApiModel):
    action: Literal["accept"]
    handoff_id: int
    payload: dict[str, Any] | None = None


class RejectHandoff(ApiModel):
    """Reject a handoff; the rejecting agent hands the story back to the sender."""

    action: Literal["reject"]
    handoff_id: int
    reason: str = Field(min_length=1)


HandoffRequest = Annotated[
    CreateHandoff | AcceptHandoff | RejectHandoff, Field(discriminator="action")
]


# =============================================================================
# PRD and stories
# =============================================================================


class CreateStoryRequest(ApiModel):
    """POST /api/prd: new story, numbered after the last one in its epic."""

    version: str = DEFAULT_VERSION
    title: str = Field(min_length=1)
    phase: int = Field(default=1, ge=1)
    epic: int = Field(default=1, ge=1)
    intent: str | None = None
    description: str | None = None
    acceptance: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    priority: int = 0


class UpdateStoryRequest(ApiModel):
    """PUT /api/prd: field changes for one story."""

    story_id: str = Field(min_length=1)
    version: str | None = None
    updates: dict[str, Any]


class RefineRequest(ApiModel):
    version: str = DEFAULT_VERSION


class ApplyRefineRequest(ApiModel):
    version: str = DEFAULT_VERSION
    refinements: list[dict[str, Any]]


class GenerateRequest(ApiModel):
    version: str = DEFAULT_VERSION
    description: str = Field(min_length=1)


class ApplyGenerateRequest(ApiModel):
    version: str = DEFAULT_VERSION
    stories: list[dict[str, Any]]
    new_epic: dict[str, Any] | None = None


class StoryEditRequest(ApiModel):
    version: str = DEFAULT_VERSION
    story_id: str = Field(min_length=1)
    requested_changes: str = Field(min_length=1)


class ApplyStoryEditRequest(ApiModel):
    version: str = DEFAULT_VERSION
    story_id: str = Field(min_length=1)
    target: dict[str, Any] | None = None
    related_updates: list[dict[str, Any]] = Field(default_factory=list)


class AlignRequest(ApiModel):
    version: str = DEFAULT_VERSION
    vision: str = Field(min_length=1)
    scope: Literal["version", "project", "phase", "epic"] = "version"
    scope_id: str | None = None


class ApplyAlignRequest(ApiModel):
    version: str = DEFAULT_VERSION
    modifications: list[dict[str, Any]] = Field(default_factory=list)
    new_stories: list[dict[str, Any]] = Field(default_factory=list)
    removals: list[str] = Field(default_factory=list)


# =============================================================================
# Tasks
# =============================================================================


class CreateTaskRequest(ApiModel):
    """POST /api/tasks."""

    type: TaskType
    version: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] | None = None


class TaskActionRequest(ApiModel):
    """PATCH /api/tasks/{id}."""

    action: Literal["read", "delete", "restore"]


__all__ = [
    "DEFAULT_VERSION",
    "AlignRequest",
    "ApplyAlignRequest",
    "ApplyGenerateRequest",
    "ApplyRefineRequest",
    "ApplyStoryEditRequest",
    "CreateStoryRequest",
    "CreateTaskRequest",
    "GenerateRequest",
    "HandoffRequest",
    "RefineRequest",
    "RunRequest",
    "SignalRequest",
    "StoryEditRequest",
    "TaskActionRequest",
    "UpdateStoryRequest",
    "parse_body",
    "read_json",
    "validate_body",
]
