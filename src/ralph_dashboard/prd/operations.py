"""LLM-assisted PRD operations.

Each operation has two halves:
    - suggest: build a prompt from the store, ask the agent for JSON
    - apply: write an accepted suggestion back to the store

Suggestions are never applied automatically; the UI shows them and PUTs
back the parts the user accepts.
"""

from __future__ import annotations

import logging
from typing import Any

from ralph_dashboard.core.config import get_config
from ralph_dashboard.core.exceptions import NotFoundError, UpstreamError, ValidationError
from ralph_dashboard.core.models import Epic, Story
from ralph_dashboard.db import Stores
from ralph_dashboard.execution.agent import AgentRunner
from ralph_dashboard.execution.prompts import (
    build_align_prompt,
    build_generate_prompt,
    build_refine_prompt,
    build_story_edit_prompt,
    related_stories,
)

logger = logging.getLogger(__name__)

ALIGN_SKIP_REASON = "Removed during alignment: does not serve vision"
ALIGN_SCOPES = ("version", "project", "phase", "epic")


def _as_dict(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise UpstreamError("Agent returned JSON that is not an object", raw=str(result)[:1000])
    return result


class PRDOperations:
    """Refine, generate, story-edit and align over one store.

    Args:
        stores: Database stores.
        runner: Agent runner used for suggestions.
        timeout: Seconds per agent call (execution.prd_timeout by default).

    """

    def __init__(self, stores: Stores, runner: AgentRunner, timeout: float | None = None) -> None:
        self.stores = stores
        self.runner = runner
        self.timeout = timeout or get_config().execution.prd_timeout

    # =========================================================================
    # Suggestions (agent calls)
    # =========================================================================

    async def suggest_refinements(self, version: str) -> dict[str, Any]:
        prd = self.stores.prd.get_prd(version)
        return _as_dict(await self.runner.run_json(build_refine_prompt(prd), self.timeout))

    async def suggest_stories(self, version: str, description: str) -> dict[str, Any]:
        if not description.strip():
            raise ValidationError("description is required", field="description")
        prd = self.stores.prd.get_prd(version)
        return _as_dict(
            await self.runner.run_json(build_generate_prompt(prd, description), self.timeout)
        )

    async def suggest_story_edit(
        self, version: str, story_id: str, requested_changes: str
    ) -> dict[str, Any]:
        """Ask for an updated story and consistency updates to related stories."""
        if not requested_changes.strip():
            raise ValidationError("requestedChanges is required", field="requestedChanges")
        prd = self.stores.prd.get_prd(version)
        story = self.stores.stories.resolve(story_id, version)
        related = related_stories(story, prd.stories)
        result = _as_dict(
            await self.runner.run_json(
                build_story_edit_prompt(story, related, requested_changes), self.timeout
            )
        )
        titles = {s.id: s.title for s in related}
        updates = [
            {**u, "title": titles.get(u.get("id", ""), u.get("title"))}
            for u in result.get("related_updates") or []
            if isinstance(u, dict)
        ]
        return {
            "storyId": story.id,
            "currentStory": story.model_dump(mode="json"),
            "relatedStories": [{"id": s.id, "title": s.title} for s in related],
            "target": result.get("target") or {},
            "related_updates": updates,
            "summary": result.get("summary"),
        }

    async def suggest_alignment(
        self, version: str, vision: str, scope: str = "version", scope_id: str | None = None
    ) -> dict[str, Any]:
        if not vision.strip():
            raise ValidationError("vision is required", field="vision")
        if scope not in ALIGN_SCOPES:
            raise ValidationError(f"Invalid scope: {scope}", field="scope")
        prd = self.stores.prd.get_prd(version)
        try:
            prompt = build_align_prompt(prd, vision, scope, scope_id)
        except ValueError as e:
            raise ValidationError(f"Invalid scopeId: {scope_id}", field="scopeId") from e
        result = _as_dict(await self.runner.run_json(prompt, self.timeout))
        return {**result, "vision": vision, "scope": scope, "scopeId": scope_id}

    # =========================================================================
    # Apply accepted suggestions
    # =========================================================================

    def apply_refinements(self, version: str, refinements: list[dict[str, Any]]) -> dict[str, Any]:
        """Write suggested descriptions/criteria onto stories. Returns counts."""
        self._require_version(version)
        updated: list[str] = []
        for item in refinements:
            story = self.stores.stories.resolve(str(item.get("id", "")), version)
            changes: dict[str, Any] = {}
            if item.get("suggested_description"):
                changes["description"] = item["suggested_description"]
            if item.get("suggested_acceptance"):
                changes["acceptance"] = list(item["suggested_acceptance"])
            if changes:
                self.stores.stories.update(story.id, changes)
                updated.append(story.id)
        logger.info("Applied %d refinement(s) to %s", len(updated), version)
        return {"updated": updated, "count": len(updated)}

    def apply_generated(
        self,
        version: str,
        stories: list[dict[str, Any]],
        new_epic: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create accepted generated stories, numbered within their epic."""
        self._require_version(version)
        if new_epic:
            phase = int(new_epic.get("phase", 1))
            existing = [e.id for e in self.stores.prd.get_prd(version).epics if e.phase == phase]
            epic_id = int(new_epic.get("id") or (max(existing, default=0) + 1))
            self.stores.prd.upsert_epic(
                version,
                Epic(phase=phase, id=epic_id, name=str(new_epic.get("name", f"Epic {epic_id}"))),
            )
        created = [self._add_story(version, raw) for raw in stories]
        logger.info("Added %d generated story(ies) to %s", len(created), version)
        return {"created": [s.id for s in created], "count": len(created)}

    def apply_story_edit(
        self,
        version: str,
        story_id: str,
        target: dict[str, Any] | None,
        related_updates: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Apply an accepted story edit and any accepted related updates."""
        self._require_version(version)
        story = self.stores.stories.resolve(story_id, version)
        updated: list[str] = []
        changes = self._suggested_changes(target or {})
        if changes:
            self.stores.stories.update(story.id, changes)
            updated.append(story.id)
        for item in related_updates or []:
            related = self.stores.stories.resolve(str(item.get("id", "")), version)
            related_changes = self._suggested_changes(item)
            if related_changes:
                self.stores.stories.update(related.id, related_changes)
                updated.append(related.id)
        return {"updated": updated, "count": len(updated)}

    def apply_alignment(
        self,
        version: str,
        modifications: list[dict[str, Any]] | None = None,
        new_stories: list[dict[str, Any]] | None = None,
        removals: list[str] | None = None,
    ) -> dict[str, Any]:
        """Apply accepted alignment changes.

        Unknown story IDs in modifications and removals are skipped.
        Removed stories are skipped, not deleted.
        """
        self._require_version(version)
        applied = added = removed = 0
        for mod in modifications or []:
            story = self.stores.stories.get(str(mod.get("story_id", "")))
            if story is None:
                continue
            changes = self._suggested_changes(mod)
            if changes:
                self.stores.stories.update(story.id, changes)
                applied += 1
        for raw in new_stories or []:
            self._add_story(version, raw)
            added += 1
        for story_id in removals or []:
            story = self.stores.stories.get(story_id)
            if story is None:
                continue
            self.stores.stories.skip(story.id, ALIGN_SKIP_REASON)
            removed += 1
        logger.info(
            "Alignment on %s: %d modified, %d added, %d removed", version, applied, added, removed
        )
        return {"applied": applied, "added": added, "removed": removed, "success": True}

    # -- Helpers --

    def _require_version(self, version: str) -> None:
        if self.stores.prd.get_version(version) is None:
            raise NotFoundError(f"Version {version} not found")

    @staticmethod
    def _suggested_changes(suggestion: dict[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for key, field in (
            ("suggested_title", "title"),
            ("suggested_intent", "intent"),
            ("suggested_description", "description"),
        ):
            if suggestion.get(key):
                changes[field] = suggestion[key]
        if suggestion.get("suggested_acceptance"):
            changes["acceptance"] = list(suggestion["suggested_acceptance"])
        return changes

    def _add_story(self, version: str, raw: dict[str, Any]) -> Story:
        title = raw.get("title")
        if not title:
            raise ValidationError("Story title is required", field="title")
        try:
            phase = int(raw.get("phase", 1))
            epic = int(raw.get("epic", 1))
        except (TypeError, ValueError) as e:
            raise ValidationError("phase and epic must be integers", field="phase") from e
        return self.stores.stories.add(
            version,
            title,
            phase,
            epic,
            intent=raw.get("intent"),
            description=raw.get("description"),
            acceptance=list(raw.get("acceptance") or []),
            depends_on=list(raw.get("depends_on") or []),
            tags=list(raw.get("tags") or []),
        )
