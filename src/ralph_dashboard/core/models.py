"""Pydantic models for persisted ralph-dashboard records.

Records are stored as SQLite rows (see ralph_dashboard.db) and serialized to
JSON for the API with ``model_dump(mode="json")``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ralph_dashboard.core.types import (
    ACTIVE_RUN_STATUSES,
    AgentType,
    CheckpointStage,
    HandoffStatus,
    RunStatus,
    StoryStatus,
    TaskStatus,
    TaskType,
    story_number_of,
)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


# =============================================================================
# PRD structure
# =============================================================================


class Story(BaseModel):
    """A unit of work in the backlog.

    Attributes:
        id: ``phase.epic.number``, optionally prefixed with the version.
        acceptance: Ordered acceptance criteria.
        depends_on: Dependency references (see ralph_dashboard.prd.dependencies).
        passes: Agent signalled the story complete.
        merged: Story's PR was merged. Terminal.
        skipped: Story was removed from the plan (soft delete).

    """

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    intent: str | None = None
    description: str | None = None
    acceptance: list[str] = Field(default_factory=list)
    phase: int = Field(..., ge=0)
    epic: int = Field(..., ge=0)
    story_number: int = Field(..., ge=0)
    target_version: str
    depends_on: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    passes: bool = False
    merged: bool = False
    skipped: bool = False
    skip_reason: str | None = None
    pr_url: str | None = None
    merge_commit: str | None = None
    working_branch: str | None = None
    priority: int = 0
    passed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def number(self) -> str:
        """Short story number without version prefix."""
        return story_number_of(self.id)

    @property
    def is_finished(self) -> bool:
        """True when the story needs no more work (passed, merged or skipped)."""
        return self.passes or self.merged or self.skipped

    def sort_key(self) -> tuple[int, int, int]:
        """Order by phase, epic, story number."""
        return (self.phase, self.epic, self.story_number)


def derive_story_status(story: Story, current_story: str | None = None) -> StoryStatus:
    """Derive the single status of a story from its flags.

    Pure function: merged wins over skipped, skipped over passed, and a story
    is in progress only while it is the run state's current story.

    Args:
        story: Story to inspect.
        current_story: ID of the story the run state is working on.

    Returns:
        Exactly one StoryStatus.

    """
    if story.merged:
        return StoryStatus.MERGED
    if story.skipped:
        return StoryStatus.SKIPPED
    if story.passes:
        return StoryStatus.PASSED
    if current_story is not None and story.id == current_story:
        return StoryStatus.IN_PROGRESS
    return StoryStatus.PENDING


class Version(BaseModel):
    """A PRD version (release target)."""

    version: str
    title: str | None = None
    short_title: str | None = None
    description: str | None = None


class Phase(BaseModel):
    """Named phase within a version."""

    id: int
    name: str


class Epic(BaseModel):
    """Named epic within a phase."""

    phase: int
    id: int
    name: str
    description: str | None = None


class PRD(BaseModel):
    """Snapshot of one version's backlog (or all versions combined)."""

    version: str
    project: str | None = None
    title: str | None = None
    phases: list[Phase] = Field(default_factory=list)
    epics: list[Epic] = Field(default_factory=list)
    stories: list[Story] = Field(default_factory=list)

    def get_story(self, story_id: str) -> Story | None:
        """Find a story by full ID."""
        for story in self.stories:
            if story.id == story_id:
                return story
        return None


# =============================================================================
# Execution records
# =============================================================================


class RunState(BaseModel):
    """Singleton execution state.

    Invariant: current_story is set iff status is running, waiting_gate or
    blocked (enforced by RunStateTracker).
    """

    current_story: str | None = None
    status: RunStatus = RunStatus.IDLE
    attempts: int = Field(default=0, ge=0)
    last_completed: str | None = None
    last_error: str | None = None
    failure_count: int = Field(default=0, ge=0)
    started_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """True when status requires a current story."""
        return self.status in ACTIVE_RUN_STATUSES


class Checkpoint(BaseModel):
    """Stage completion marker for a story."""

    story_id: str
    stage: CheckpointStage
    at: datetime
    attempt: int = 0
    data: dict[str, Any] = Field(default_factory=dict)


class Handoff(BaseModel):
    """Recorded transfer of work between two agent roles."""

    id: int
    story_id: str
    from_agent: AgentType
    to_agent: AgentType
    status: HandoffStatus = HandoffStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    rejection_reason: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class Task(BaseModel):
    """Async operation record for long-running LLM calls."""

    id: str
    type: TaskType
    status: TaskStatus = TaskStatus.QUEUED
    version: str
    params: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] | None = None
    result: Any = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    read_at: datetime | None = None
    deleted_at: datetime | None = None


class MetricRecord(BaseModel):
    """One external agent invocation."""

    id: int | None = None
    story_id: str
    attempt: int = 0
    duration_seconds: float = 0.0
    success: bool = False
    error: str | None = None
    created_at: datetime | None = None
