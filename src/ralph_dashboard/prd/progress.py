"""Computed progress views over a PRD snapshot."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ralph_dashboard.core.models import PRD, Story
from ralph_dashboard.prd.dependencies import (
    StoryRef,
    find_story,
    is_dep_met,
    is_story_blocked,
    parse_dependency,
)

# Blocked stories shown on the dashboard
MAX_BLOCKED = 5


class PhaseProgress(BaseModel):
    phase: int
    name: str | None = None
    total: int = 0
    merged: int = 0
    passed: int = 0
    skipped: int = 0
    percentage: int = 0


class EpicProgress(BaseModel):
    phase: int
    epic: int
    phase_name: str | None = None
    epic_name: str | None = None
    total: int = 0
    merged: int = 0
    story_ids: list[str] = Field(default_factory=list)


class TotalStats(BaseModel):
    """Backlog totals. ``passed`` counts stories passed but not merged."""

    total: int = 0
    merged: int = 0
    passed: int = 0
    skipped: int = 0
    remaining: int = 0
    percentage: int = 0
    total_duration_seconds: float = 0.0


class BlockedInfo(BaseModel):
    story_id: str
    title: str
    blocked_by: str
    blocker_id: str


def _percentage(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


def phase_progress(prd: PRD) -> list[PhaseProgress]:
    """Per-phase counts, ordered by phase."""
    names = {p.id: p.name for p in prd.phases}
    phases: dict[int, PhaseProgress] = {}
    for story in prd.stories:
        p = phases.setdefault(
            story.phase, PhaseProgress(phase=story.phase, name=names.get(story.phase))
        )
        p.total += 1
        if story.merged:
            p.merged += 1
        elif story.passes:
            p.passed += 1
        if story.skipped:
            p.skipped += 1
    for p in phases.values():
        p.percentage = _percentage(p.merged, p.total)
    return [phases[k] for k in sorted(phases)]


def epic_progress(prd: PRD) -> list[EpicProgress]:
    """Per-epic counts, ordered by (phase, epic)."""
    phase_names = {p.id: p.name for p in prd.phases}
    epic_names = {(e.phase, e.id): e.name for e in prd.epics}
    epics: dict[tuple[int, int], EpicProgress] = {}
    for story in sorted(prd.stories, key=Story.sort_key):
        key = (story.phase, story.epic)
        e = epics.setdefault(
            key,
            EpicProgress(
                phase=story.phase,
                epic=story.epic,
                phase_name=phase_names.get(story.phase),
                epic_name=epic_names.get(key),
            ),
        )
        e.total += 1
        if story.merged:
            e.merged += 1
        e.story_ids.append(story.id)
    return [epics[k] for k in sorted(epics)]


def total_stats(prd: PRD, metrics: dict[str, Any] | None = None) -> TotalStats:
    """Totals across the snapshot, with agent time from the metrics summary."""
    total = len(prd.stories)
    merged = sum(1 for s in prd.stories if s.merged)
    passed = sum(1 for s in prd.stories if s.passes and not s.merged)
    skipped = sum(1 for s in prd.stories if s.skipped)
    return TotalStats(
        total=total,
        merged=merged,
        passed=passed,
        skipped=skipped,
        remaining=total - merged - skipped,
        percentage=_percentage(merged, total),
        total_duration_seconds=(metrics or {}).get("total_duration_seconds", 0.0),
    )


def version_progress(prds: list[PRD]) -> dict[str, TotalStats]:
    """Totals per version."""
    return {prd.version: total_stats(prd) for prd in prds}


def blocked_stories(prd: PRD, limit: int = MAX_BLOCKED) -> list[BlockedInfo]:
    """Stories waiting on a story that is itself workable.

    Only the first generation is reported: a story is listed when one of its
    unmet story dependencies points at a story that is not blocked itself.
    Cohort dependencies are not traced.
    """
    stories = prd.stories
    blocked: list[BlockedInfo] = []
    for story in stories:
        if story.is_finished or not story.depends_on:
            continue
        for dep in story.depends_on:
            if is_dep_met(dep, stories, story.target_version):
                continue
            ref = parse_dependency(dep)
            if not isinstance(ref, StoryRef):
                continue
            blocker = find_story(ref, stories, story.target_version)
            if blocker is not None and not is_story_blocked(blocker, stories):
                blocked.append(
                    BlockedInfo(
                        story_id=story.id, title=story.title, blocked_by=dep, blocker_id=blocker.id
                    )
                )
                break
    return blocked[:limit]


def unmerged_passed(prd: PRD) -> list[Story]:
    """Stories that passed but are not merged yet."""
    return [s for s in prd.stories if s.passes and not s.merged]
