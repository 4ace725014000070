"""Core type definitions for ralph-dashboard.

This module provides the enums shared by the store, the orchestrator and the
API layer, plus helpers for story identifiers.

Story IDs have the form ``phase.epic.number`` (e.g. ``1.2.3``), optionally
prefixed with the target version (``v0.1:1.2.3``).
"""

from __future__ import annotations

import re
from enum import Enum
from typing import TypeAlias

# Short story number without version prefix, e.g. "1.2.3"
StoryNumber: TypeAlias = str

STORY_NUMBER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
VERSION_RE = re.compile(r"^v\d+\.\d+$")


class StoryStatus(str, Enum):
    """Derived story status (never stored, see derive_story_status)."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    MERGED = "merged"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Status of the single execution loop."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_GATE = "waiting_gate"
    BLOCKED = "blocked"


# Statuses in which run state must point at a current story
ACTIVE_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.RUNNING, RunStatus.WAITING_GATE, RunStatus.BLOCKED}
)


class CheckpointStage(str, Enum):
    """Story execution stages, in progression order."""

    EXTERNAL_DEPS_COMPLETE = "external_deps_complete"
    VALIDATION_COMPLETE = "validation_complete"
    BRANCH_CREATED = "branch_created"
    CLAUDE_STARTED = "claude_started"
    CLAUDE_COMPLETE = "claude_complete"
    PR_CREATED = "pr_created"


CHECKPOINT_ORDER: tuple[CheckpointStage, ...] = tuple(CheckpointStage)


class AgentType(str, Enum):
    """Agent roles in the handoff pipeline."""

    ORCHESTRATOR = "orchestrator"
    ANALYST = "analyst"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    DOCUMENTER = "documenter"


class HandoffStatus(str, Enum):
    """Handoff lifecycle status."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class TaskType(str, Enum):
    """Async task kinds created by long-running LLM operations."""

    REFINE = "refine"
    GENERATE = "generate"
    STORY_EDIT = "story-edit"
    ALIGN = "align"


class TaskStatus(str, Enum):
    """Async task status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


# =============================================================================
# Story ID helpers
# =============================================================================


def split_story_id(story_id: str) -> tuple[str | None, StoryNumber]:
    """Split a story ID into (version, story number).

    Args:
        story_id: Story ID with or without version prefix.

    Returns:
        Tuple of version (None when unprefixed) and the short story number.

    Examples:
        >>> split_story_id("v0.1:1.2.3")
        ('v0.1', '1.2.3')
        >>> split_story_id("1.2.3")
        (None, '1.2.3')

    """
    if ":" in story_id:
        version, _, number = story_id.partition(":")
        return version, number
    return None, story_id


def story_number_of(story_id: str) -> StoryNumber:
    """Return the short story number of a (possibly prefixed) story ID.

    Examples:
        >>> story_number_of("v0.1:1.1.1")
        '1.1.1'

    """
    return split_story_id(story_id)[1]


def make_story_id(phase: int, epic: int, story_number: int, version: str | None = None) -> str:
    """Build a story ID from its parts.

    Examples:
        >>> make_story_id(1, 2, 3)
        '1.2.3'
        >>> make_story_id(1, 2, 3, "v0.1")
        'v0.1:1.2.3'

    """
    number = f"{phase}.{epic}.{story_number}"
    return f"{version}:{number}" if version else number


def parse_story_number(number: str) -> tuple[int, int, int]:
    """Parse a short story number into (phase, epic, story_number).

    Raises:
        ValueError: If number is not in ``X.Y.Z`` form.

    Examples:
        >>> parse_story_number("1.10.2")
        (1, 10, 2)

    """
    match = STORY_NUMBER_RE.match(number)
    if not match:
        raise ValueError(f"Invalid story number: {number} (expected 'phase.epic.number')")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def is_version(value: str) -> bool:
    """Check whether value looks like a version tag (``v0.1``)."""
    return bool(VERSION_RE.match(value))
