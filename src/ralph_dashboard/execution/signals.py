"""Agent-facing signals: complete, blocked, progress.

The agent reports its outcome by calling POST /api/signal from inside its
session. Each action has one handler; the orchestrator reads the resulting
story flags, checkpoints and run state after the agent exits.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ralph_dashboard.core.exceptions import ValidationError
from ralph_dashboard.core.models import Story
from ralph_dashboard.core.types import CheckpointStage, RunStatus
from ralph_dashboard.db import Stores
from ralph_dashboard.execution.orchestrator import EventSink

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_MESSAGE = "Story blocked"

SignalHandler = Callable[..., Awaitable[dict[str, Any]]]


async def _emit(events: EventSink | None, event_type: str, data: dict[str, Any]) -> None:
    if events is not None:
        await events.broadcast_event(event_type, data)


async def signal_complete(
    stores: Stores,
    story: Story,
    message: str | None,
    pr_url: str | None,
    events: EventSink | None = None,
) -> dict[str, Any]:
    """Mark the story passed. Calling it twice is harmless."""
    stores.stories.mark_passed(story.id)
    if pr_url:
        stores.stories.set_pr_url(story.id, pr_url)
    stores.checkpoints.save(
        story.id, CheckpointStage.CLAUDE_COMPLETE, {"message": message, "prUrl": pr_url}
    )
    stores.run_state.clear_failure()
    stores.handoffs.close_for_story(story.id)
    logger.info("Agent signalled %s complete", story.id)

    await _emit(events, "story_update", {"storyId": story.id, "status": "complete"})
    await _emit(events, "run_state", stores.run_state.get().model_dump(mode="json"))
    return {
        "success": True,
        "storyId": story.id,
        "status": "complete",
        "message": message or f"Story {story.id} marked as complete",
    }


async def signal_blocked(
    stores: Stores,
    story: Story,
    message: str | None,
    pr_url: str | None,
    events: EventSink | None = None,
) -> dict[str, Any]:
    """Record the failure and put the run into blocked on this story."""
    reason = message or DEFAULT_BLOCKED_MESSAGE
    count = stores.run_state.record_failure(reason)
    state = stores.run_state.set_status(RunStatus.BLOCKED, story.id)
    logger.warning("Agent signalled %s blocked (%d): %s", story.id, count, reason)

    await _emit(
        events, "story_update", {"storyId": story.id, "status": "blocked", "message": message}
    )
    await _emit(events, "run_state", state.model_dump(mode="json"))
    return {
        "success": True,
        "storyId": story.id,
        "status": "blocked",
        "failureCount": count,
        "message": message or f"Story {story.id} marked as blocked",
    }


async def signal_progress(
    stores: Stores,
    story: Story,
    message: str | None,
    pr_url: str | None,
    events: EventSink | None = None,
) -> dict[str, Any]:
    """Status ping; nothing is written."""
    await _emit(
        events, "story_update", {"storyId": story.id, "status": "progress", "message": message}
    )
    return {
        "success": True,
        "storyId": story.id,
        "status": "progress",
        "message": message or "Progress update received",
    }


SIGNAL_HANDLERS: dict[str, SignalHandler] = {
    "complete": signal_complete,
    "blocked": signal_blocked,
    "progress": signal_progress,
}


async def handle_signal(
    stores: Stores,
    story_id: str,
    action: str,
    message: str | None = None,
    pr_url: str | None = None,
    events: EventSink | None = None,
) -> dict[str, Any]:
    """Dispatch one signal.

    Raises:
        ValidationError: If the action is unknown.
        NotFoundError: If the story does not exist.

    """
    handler = SIGNAL_HANDLERS.get(action)
    if handler is None:
        raise ValidationError(
            f"Invalid action: {action}. Valid actions: {', '.join(SIGNAL_HANDLERS)}",
            field="action",
        )
    story = stores.stories.resolve(story_id)
    return await handler(stores, story, message, pr_url, events)


def signal_status(stores: Stores, story_id: str | None = None) -> dict[str, Any]:
    """Run state, or one story's completion flags."""
    if not story_id:
        return stores.run_state.get().model_dump(mode="json")
    story = stores.stories.resolve(story_id)
    return {
        "storyId": story.id,
        "passes": story.passes,
        "merged": story.merged,
        "skipped": story.skipped,
        "working_branch": story.working_branch,
        "pr_url": story.pr_url,
    }
