"""Next-story selection.

Each eligible story is scored as the sum of:

    proximity  = proximity_weight / (1 + d)
                 d = undirected dependency-graph distance from the last
                 completed story (0 when unreachable or nothing completed)
    tag score  = tag_weight * |tags shared with recently completed stories|
    blockers   = blocker_weight * unfinished stories directly depending on it
    priority   = priority_weight * min(priority / 10, 1)
    simplicity = complexity_weight / max(1, acceptance criteria)

The highest score wins. Ties go to the lowest (phase, epic, story_number).
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from pydantic import BaseModel

from ralph_dashboard.core.config import SelectionConfig
from ralph_dashboard.core.models import Story
from ralph_dashboard.prd.dependencies import direct_dependents, eligible_stories, resolve_dependency

logger = logging.getLogger(__name__)


class StoryScore(BaseModel):
    """Score breakdown for one candidate."""

    story_id: str
    score: float
    proximity: float
    distance: int | None
    tag_overlap: int
    blocker_value: int
    priority: int
    inverse_complexity: float


def build_graph(stories: list[Story]) -> dict[str, set[str]]:
    """Undirected adjacency over story IDs, one edge per resolved dependency."""
    graph: dict[str, set[str]] = {s.id: set() for s in stories}
    for story in stories:
        for dep in story.depends_on:
            for target in resolve_dependency(dep, stories, story.target_version):
                if target.id == story.id:
                    continue
                graph[story.id].add(target.id)
                graph.setdefault(target.id, set()).add(story.id)
    return graph


def graph_distances(graph: dict[str, set[str]], start: str) -> dict[str, int]:
    """Breadth-first distances from start to every reachable node."""
    if start not in graph:
        return {}
    distances = {start: 0}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for neighbour in graph[node]:
            if neighbour not in distances:
                distances[neighbour] = distances[node] + 1
                queue.append(neighbour)
    return distances


def inverse_complexity(story: Story) -> float:
    """1.0 for zero or one acceptance criterion, 1/n for n."""
    return 1.0 / max(1, len(story.acceptance))


def priority_score(story: Story) -> float:
    return min(max(story.priority, 0) / 10, 1.0)


def recent_tags(recent: Iterable[Story]) -> set[str]:
    tags: set[str] = set()
    for story in recent:
        tags.update(story.tags)
    return tags


def score_stories(
    stories: list[Story],
    version: str | None = None,
    last_completed: str | None = None,
    recent: Iterable[Story] = (),
    config: SelectionConfig | None = None,
) -> list[StoryScore]:
    """Score every eligible story, best first.

    Args:
        stories: Whole backlog (all versions, for cross-version dependencies).
        version: Only score stories targeting this version.
        last_completed: ID of the most recently completed story.
        recent: Recently completed stories feeding tag overlap.
        config: Scoring weights (defaults when None).

    """
    config = config or SelectionConfig()
    candidates = eligible_stories(stories, version)
    if not candidates:
        return []

    distances = graph_distances(build_graph(stories), last_completed) if last_completed else {}
    tags = recent_tags(recent)
    by_id = {s.id: s for s in candidates}

    scores: list[StoryScore] = []
    for story in candidates:
        distance = distances.get(story.id)
        proximity = config.proximity_weight / (1 + distance) if distance is not None else 0.0
        overlap = len(tags.intersection(story.tags))
        blockers = sum(1 for d in direct_dependents(story, stories) if not d.is_finished)
        simplicity = inverse_complexity(story)
        score = (
            proximity
            + config.tag_weight * overlap
            + config.blocker_weight * blockers
            + config.priority_weight * priority_score(story)
            + config.complexity_weight * simplicity
        )
        scores.append(
            StoryScore(
                story_id=story.id,
                score=score,
                proximity=proximity,
                distance=distance,
                tag_overlap=overlap,
                blocker_value=blockers,
                priority=story.priority,
                inverse_complexity=simplicity,
            )
        )

    scores.sort(key=lambda s: (-s.score, by_id[s.story_id].sort_key()))
    return scores


def select_next_story(
    stories: list[Story],
    version: str | None = None,
    last_completed: str | None = None,
    recent: Iterable[Story] = (),
    config: SelectionConfig | None = None,
) -> tuple[Story, StoryScore] | None:
    """Pick the best eligible story, or None when nothing is eligible."""
    scores = score_stories(stories, version, last_completed, recent, config)
    if not scores:
        return None
    best = scores[0]
    story = next(s for s in stories if s.id == best.story_id)
    logger.debug("Selected %s (score %.2f)", story.id, best.score)
    return story, best
