"""Dependency references between stories.

A story's ``depends_on`` entries are parsed into one of four reference
kinds, each with its own satisfaction rule:

Reference forms:
    - ``1.2.3``, ``STORY-1.2.3``, ``v0.1:1.2.3`` -> StoryRef (one story)
    - ``1:2``, ``v0.1:1:2`` -> PhaseEpicRef (every story of an epic)
    - ``1``, ``v0.1:1`` -> PhaseRef (every story of a phase)
    - ``v0.1`` -> VersionRef (every story of a version)

Anything else parses to None and is never met.

A story reference is met when that story is merged. A cohort reference is
met when every member is merged, skipped members included; an empty cohort
is not met. Every unversioned reference is scoped to the dependent story's
version, for satisfaction and for graph edges alike.

Public API:
    - parse_dependency: Parse one reference string
    - is_dep_met: Check one reference against the backlog
    - resolve_dependency: Map a reference to its leaf stories (graph edges)
    - is_story_blocked / eligible_stories: Dependency gating for execution
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TypeAlias

from ralph_dashboard.core.models import Story

logger = logging.getLogger(__name__)

__all__ = [
    "DependencyRef",
    "PhaseEpicRef",
    "PhaseRef",
    "StoryRef",
    "VersionRef",
    "are_all_deps_met",
    "cohort_members",
    "direct_dependents",
    "eligible_stories",
    "is_dep_met",
    "is_story_blocked",
    "parse_dependency",
    "resolve_dependency",
    "unmet_dependencies",
]

_VERSION = r"v\d+\.\d+"
_STORY_RE = re.compile(rf"^(?:(?P<version>{_VERSION}):|STORY-)?(?P<number>\d+\.\d+\.\d+)$")
_PHASE_EPIC_RE = re.compile(rf"^(?:(?P<version>{_VERSION}):)?(?P<phase>\d+):(?P<epic>\d+)$")
_PHASE_RE = re.compile(rf"^(?:(?P<version>{_VERSION}):)?(?P<phase>\d+)$")
_VERSION_RE = re.compile(rf"^(?P<version>{_VERSION})$")


# =============================================================================
# Reference variants
# =============================================================================


@dataclass(frozen=True)
class StoryRef:
    """Reference to a single story by number."""

    version: str | None
    number: str


@dataclass(frozen=True)
class PhaseEpicRef:
    """Reference to every story of one epic."""

    version: str | None
    phase: int
    epic: int


@dataclass(frozen=True)
class PhaseRef:
    """Reference to every story of one phase."""

    version: str | None
    phase: int


@dataclass(frozen=True)
class VersionRef:
    """Reference to every story of one version."""

    version: str


DependencyRef: TypeAlias = StoryRef | PhaseEpicRef | PhaseRef | VersionRef


def parse_dependency(text: str) -> DependencyRef | None:
    """Parse a dependency string.

    Examples:
        >>> parse_dependency("STORY-1.2.3")
        StoryRef(version=None, number='1.2.3')
        >>> parse_dependency("v0.1:1:2")
        PhaseEpicRef(version='v0.1', phase=1, epic=2)
        >>> parse_dependency("later") is None
        True

    """
    text = text.strip()
    if match := _STORY_RE.match(text):
        return StoryRef(match.group("version"), match.group("number"))
    if match := _PHASE_EPIC_RE.match(text):
        return PhaseEpicRef(
            match.group("version"), int(match.group("phase")), int(match.group("epic"))
        )
    if match := _PHASE_RE.match(text):
        return PhaseRef(match.group("version"), int(match.group("phase")))
    if match := _VERSION_RE.match(text):
        return VersionRef(match.group("version"))
    logger.debug("Unrecognized dependency reference: %r", text)
    return None


# =============================================================================
# Resolution
# =============================================================================


def _scope(ref: DependencyRef, current_version: str | None) -> str | None:
    """Version a reference points into: its own, else the dependent's."""
    return ref.version or current_version


def find_story(
    ref: StoryRef, stories: Iterable[Story], current_version: str | None
) -> Story | None:
    """Find the story a StoryRef points at.

    An unversioned reference is scoped to current_version; with no current
    version it matches the number in any version.
    """
    version = _scope(ref, current_version)
    return next(
        (
            s
            for s in stories
            if s.number == ref.number and (version is None or s.target_version == version)
        ),
        None,
    )


def cohort_members(
    ref: PhaseEpicRef | PhaseRef | VersionRef,
    stories: Iterable[Story],
    current_version: str | None,
) -> list[Story]:
    """Stories covered by a cohort reference, skipped stories included."""
    version = _scope(ref, current_version)
    members = list(stories)
    if version is not None:
        members = [s for s in members if s.target_version == version]
    if isinstance(ref, PhaseEpicRef):
        return [s for s in members if s.phase == ref.phase and s.epic == ref.epic]
    if isinstance(ref, PhaseRef):
        return [s for s in members if s.phase == ref.phase]
    return members


def _refers_to(dep: str, story: Story, dependent_version: str) -> bool:
    ref = parse_dependency(dep)
    return isinstance(ref, StoryRef) and _covers(ref, story, dependent_version)


def resolve_dependency(
    dep: str | DependencyRef,
    stories: list[Story],
    current_version: str | None = None,
) -> list[Story]:
    """Resolve a reference to the stories a graph edge should point at.

    Story references resolve to that story. Cohort references resolve to
    the cohort's leaf stories: members that no other member depends on.
    Unresolvable references resolve to an empty list.
    """
    ref = parse_dependency(dep) if isinstance(dep, str) else dep
    if ref is None:
        return []
    if isinstance(ref, StoryRef):
        found = find_story(ref, stories, current_version)
        return [found] if found is not None else []

    members = cohort_members(ref, stories, current_version)
    depended_on = {
        m.id
        for m in members
        for other in members
        if other.id != m.id
        and any(_refers_to(d, m, other.target_version) for d in other.depends_on)
    }
    return [m for m in members if m.id not in depended_on]


# =============================================================================
# Satisfaction
# =============================================================================


def is_dep_met(
    dep: str | DependencyRef, stories: list[Story], current_version: str | None = None
) -> bool:
    """Check whether a dependency reference is satisfied.

    Args:
        dep: Reference string or parsed reference.
        stories: Backlog to check against (may span versions).
        current_version: Version of the dependent story, scoping
            unversioned references.

    """
    ref = parse_dependency(dep) if isinstance(dep, str) else dep
    if ref is None:
        return False
    if isinstance(ref, StoryRef):
        found = find_story(ref, stories, current_version)
        return found is not None and found.merged
    members = cohort_members(ref, stories, current_version)
    return bool(members) and all(m.merged for m in members)


def unmet_dependencies(story: Story, stories: list[Story]) -> list[str]:
    """Dependency strings of a story that are not yet met."""
    return [d for d in story.depends_on if not is_dep_met(d, stories, story.target_version)]


def are_all_deps_met(story: Story, stories: list[Story]) -> bool:
    return not unmet_dependencies(story, stories)


def is_story_blocked(story: Story, stories: list[Story]) -> bool:
    """True for unfinished stories waiting on an unmet dependency."""
    return not story.is_finished and not are_all_deps_met(story, stories)


def eligible_stories(stories: list[Story], version: str | None = None) -> list[Story]:
    """Unfinished stories whose dependencies are all met, in backlog order."""
    candidates = [
        s
        for s in stories
        if not s.is_finished and (version is None or s.target_version == version)
    ]
    return sorted(
        (s for s in candidates if are_all_deps_met(s, stories)),
        key=Story.sort_key,
    )


def _covers(ref: DependencyRef, story: Story, dependent_version: str) -> bool:
    version = _scope(ref, dependent_version)
    if story.target_version != version:
        return False
    if isinstance(ref, StoryRef):
        return story.number == ref.number
    if isinstance(ref, PhaseEpicRef):
        return story.phase == ref.phase and story.epic == ref.epic
    if isinstance(ref, PhaseRef):
        return story.phase == ref.phase
    return True


def direct_dependents(story: Story, stories: list[Story]) -> list[Story]:
    """Stories that list ``story`` in depends_on, directly or through a cohort."""
    dependents: list[Story] = []
    for other in stories:
        if other.id == story.id:
            continue
        for dep in other.depends_on:
            ref = parse_dependency(dep)
            if ref is not None and _covers(ref, story, other.target_version):
                dependents.append(other)
                break
    return dependents
