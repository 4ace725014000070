"""Backlog logic: dependency references, progress views and story selection."""

from ralph_dashboard.prd.dependencies import (
    DependencyRef,
    PhaseEpicRef,
    PhaseRef,
    StoryRef,
    VersionRef,
    eligible_stories,
    is_dep_met,
    is_story_blocked,
    parse_dependency,
    resolve_dependency,
)
from ralph_dashboard.prd.selection import StoryScore, score_stories, select_next_story

__all__ = [
    "DependencyRef",
    "PhaseEpicRef",
    "PhaseRef",
    "StoryRef",
    "StoryScore",
    "VersionRef",
    "eligible_stories",
    "is_dep_met",
    "is_story_blocked",
    "parse_dependency",
    "resolve_dependency",
    "score_stories",
    "select_next_story",
]
