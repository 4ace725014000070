"""Story Store: persisted backlog records.

Stories are created by generation/import, mutated by refine/align/edit
operations and by the signal endpoint, and never hard-deleted.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ralph_dashboard.core.exceptions import ConflictError, NotFoundError, ValidationError
from ralph_dashboard.core.models import Story
from ralph_dashboard.core.types import make_story_id, split_story_id
from ralph_dashboard.db.database import Database, from_json, now_iso, to_json

logger = logging.getLogger(__name__)

# Fields PUT /api/prd and PATCH /api/story/{id} may change
UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "title",
        "intent",
        "description",
        "acceptance",
        "depends_on",
        "tags",
        "priority",
        "passes",
        "merged",
        "skipped",
        "skip_reason",
        "pr_url",
        "merge_commit",
        "working_branch",
    }
)

_JSON_FIELDS = ("acceptance", "depends_on", "tags")
_BOOL_FIELDS = ("passes", "merged", "skipped")


class StoryStore:
    """CRUD operations over the stories table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # -- Reads --

    def get(self, story_id: str) -> Story | None:
        row = self.db.fetchone("SELECT * FROM stories WHERE id = ?", (story_id,))
        return self._row_to_story(row) if row is not None else None

    def require(self, story_id: str) -> Story:
        """Get a story or raise NotFoundError."""
        story = self.get(story_id)
        if story is None:
            raise NotFoundError(f"Story {story_id} not found")
        return story

    def resolve(self, story_ref: str, version: str | None = None) -> Story:
        """Find a story by full ID or by bare ``phase.epic.number``.

        Agents often signal with the bare number. It is matched within
        ``version`` when given, else across all versions.

        Raises:
            NotFoundError: If nothing matches.
            ValidationError: If a bare number matches stories in several versions.

        """
        story = self.get(story_ref)
        if story is not None:
            return story
        ref_version, number = split_story_id(story_ref)
        version = ref_version or version
        matches = [s for s in self.list(version) if s.number == number]
        if not matches:
            raise NotFoundError(f"Story {story_ref} not found")
        if len(matches) > 1:
            raise ValidationError(
                f"Story {story_ref} is ambiguous: {', '.join(s.id for s in matches)}",
                field="storyId",
            )
        return matches[0]

    def list(self, version: str | None = None) -> list[Story]:
        """List stories ordered by phase, epic, story number.

        Args:
            version: Restrict to one target version (None = all versions).

        """
        if version is None:
            rows = self.db.fetchall(
                "SELECT * FROM stories ORDER BY target_version, phase, epic, story_number"
            )
        else:
            rows = self.db.fetchall(
                "SELECT * FROM stories WHERE target_version = ? "
                "ORDER BY phase, epic, story_number",
                (version,),
            )
        return [self._row_to_story(r) for r in rows]

    def recently_passed(self, limit: int = 5, version: str | None = None) -> list[Story]:
        """Most recently passed stories, newest first."""
        sql = "SELECT * FROM stories WHERE passes = 1 AND passed_at IS NOT NULL"
        params: list[Any] = []
        if version is not None:
            sql += " AND target_version = ?"
            params.append(version)
        sql += " ORDER BY passed_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_story(r) for r in self.db.fetchall(sql, params)]

    def next_story_number(self, version: str, phase: int, epic: int) -> int:
        """Next free story number within a (version, phase, epic)."""
        row = self.db.fetchone(
            "SELECT MAX(story_number) AS n FROM stories "
            "WHERE target_version = ? AND phase = ? AND epic = ?",
            (version, phase, epic),
        )
        current = row["n"] if row is not None and row["n"] is not None else 0
        return int(current) + 1

    # -- Writes --

    def create(self, story: Story) -> Story:
        """Insert a story.

        Raises:
            ConflictError: If a story with the same ID exists.

        """
        now = now_iso()
        try:
            self.db.execute(
                """INSERT INTO stories
                (id, title, intent, description, acceptance, phase, epic, story_number,
                 target_version, depends_on, tags, passes, merged, skipped, skip_reason,
                 pr_url, merge_commit, working_branch, priority, passed_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    story.id, story.title, story.intent, story.description,
                    to_json(story.acceptance), story.phase, story.epic, story.story_number,
                    story.target_version, to_json(story.depends_on), to_json(story.tags),
                    int(story.passes), int(story.merged), int(story.skipped),
                    story.skip_reason, story.pr_url, story.merge_commit,
                    story.working_branch, story.priority,
                    story.passed_at.isoformat() if story.passed_at else None,
                    now, now,
                ),
            )
        except sqlite3.IntegrityError as e:
            existing = self.get(story.id)
            raise ConflictError(
                f"Story {story.id} already exists",
                existing=existing.model_dump(mode="json") if existing else None,
            ) from e
        logger.debug("Created story %s", story.id)
        return self.require(story.id)

    def bulk_create(self, stories: list[Story]) -> list[Story]:
        """Insert several stories, skipping IDs that already exist."""
        created: list[Story] = []
        for story in stories:
            if self.get(story.id) is not None:
                logger.info("Story %s already exists, skipping", story.id)
                continue
            created.append(self.create(story))
        return created

    def add(
        self,
        version: str,
        title: str,
        phase: int,
        epic: int,
        **fields: Any,
    ) -> Story:
        """Create a story with the next free number in its phase/epic.

        Args:
            version: Target version (also used as ID prefix).
            title: Story title.
            phase: Phase number.
            epic: Epic number.
            **fields: Other Story fields (intent, acceptance, depends_on, tags...).

        """
        number = self.next_story_number(version, phase, epic)
        story = Story(
            id=make_story_id(phase, epic, number, version),
            title=title,
            phase=phase,
            epic=epic,
            story_number=number,
            target_version=version,
            **fields,
        )
        return self.create(story)

    def update(self, story_id: str, changes: dict[str, Any]) -> Story:
        """Apply field changes to a story.

        Raises:
            NotFoundError: If the story does not exist.
            ValidationError: On unknown fields or an attempt to un-merge.

        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if not changes:
            return self.require(story_id)

        with self.db.transaction() as conn:
            story = self.require(story_id)
            if story.merged and "merged" in changes and not changes["merged"]:
                raise ValidationError(
                    f"Story {story_id} is merged; merged is terminal", field="merged"
                )

            assignments: list[str] = []
            params: list[Any] = []
            for key, value in changes.items():
                if key in _JSON_FIELDS:
                    value = to_json(list(value or []))
                elif key in _BOOL_FIELDS:
                    value = int(bool(value))
                assignments.append(f"{key} = ?")
                params.append(value)
            if changes.get("passes") and not story.passes:
                assignments.append("passed_at = ?")
                params.append(now_iso())
            assignments.append("updated_at = ?")
            params.append(now_iso())
            params.append(story_id)
            conn.execute(f"UPDATE stories SET {', '.join(assignments)} WHERE id = ?", params)
        return self.require(story_id)

    def mark_passed(self, story_id: str) -> Story:
        """Set passes=true. Idempotent: passed_at keeps its first value."""
        now = now_iso()
        self.db.execute(
            "UPDATE stories SET passes = 1, passed_at = COALESCE(passed_at, ?), updated_at = ? "
            "WHERE id = ?",
            (now, now, story_id),
        )
        return self.require(story_id)

    def mark_merged(self, story_id: str, merge_commit: str | None = None) -> Story:
        """Set merged=true (and passes). Terminal."""
        now = now_iso()
        self.db.execute(
            "UPDATE stories SET merged = 1, passes = 1, passed_at = COALESCE(passed_at, ?), "
            "merge_commit = COALESCE(?, merge_commit), updated_at = ? WHERE id = ?",
            (now, merge_commit, now, story_id),
        )
        return self.require(story_id)

    def skip(self, story_id: str, reason: str) -> Story:
        """Soft-delete a story."""
        return self.update(story_id, {"skipped": True, "skip_reason": reason})

    def set_pr_url(self, story_id: str, pr_url: str) -> None:
        self.db.execute(
            "UPDATE stories SET pr_url = ?, updated_at = ? WHERE id = ?",
            (pr_url, now_iso(), story_id),
        )

    def set_working_branch(self, story_id: str, branch: str) -> None:
        self.db.execute(
            "UPDATE stories SET working_branch = ?, updated_at = ? WHERE id = ?",
            (branch, now_iso(), story_id),
        )

    @staticmethod
    def _row_to_story(row: sqlite3.Row) -> Story:
        return Story(
            id=row["id"],
            title=row["title"],
            intent=row["intent"],
            description=row["description"],
            acceptance=from_json(row["acceptance"], []),
            phase=row["phase"],
            epic=row["epic"],
            story_number=row["story_number"],
            target_version=row["target_version"],
            depends_on=from_json(row["depends_on"], []),
            tags=from_json(row["tags"], []),
            passes=bool(row["passes"]),
            merged=bool(row["merged"]),
            skipped=bool(row["skipped"]),
            skip_reason=row["skip_reason"],
            pr_url=row["pr_url"],
            merge_commit=row["merge_commit"],
            working_branch=row["working_branch"],
            priority=row["priority"],
            passed_at=row["passed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
