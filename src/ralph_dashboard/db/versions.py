"""PRD structure: versions, phases and epics, plus whole-PRD snapshots."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ralph_dashboard.core.exceptions import NotFoundError, ValidationError
from ralph_dashboard.core.models import PRD, Epic, Phase, Story, Version
from ralph_dashboard.core.types import make_story_id, parse_story_number, split_story_id
from ralph_dashboard.db.database import Database
from ralph_dashboard.db.stories import StoryStore

logger = logging.getLogger(__name__)

# Pseudo-version combining every version's stories
ALL_VERSIONS = "all"

# Legacy story ID prefix in imported documents
STORY_PREFIX = "STORY-"


class PRDStore:
    """Versions, phases and epics, and PRD snapshots built from the store."""

    def __init__(self, db: Database, stories: StoryStore | None = None) -> None:
        self.db = db
        self.stories = stories or StoryStore(db)

    # -- Versions --

    def list_versions(self) -> list[Version]:
        """Known versions, including versions that only appear on stories."""
        rows = self.db.fetchall("SELECT * FROM versions")
        versions = {r["version"]: Version(
            version=r["version"],
            title=r["title"],
            short_title=r["short_title"],
            description=r["description"],
        ) for r in rows}
        for r in self.db.fetchall("SELECT DISTINCT target_version FROM stories"):
            versions.setdefault(r["target_version"], Version(version=r["target_version"]))
        return sorted(versions.values(), key=lambda v: v.version)

    def get_version(self, version: str) -> Version | None:
        for v in self.list_versions():
            if v.version == version:
                return v
        return None

    def upsert_version(self, version: Version, project: str | None = None) -> Version:
        self.db.execute(
            "INSERT OR REPLACE INTO versions (version, title, short_title, description, project) "
            "VALUES (?, ?, ?, ?, ?)",
            (version.version, version.title, version.short_title, version.description, project),
        )
        return version

    def upsert_phase(self, version: str, phase: Phase) -> Phase:
        self.db.execute(
            "INSERT OR REPLACE INTO phases (version, id, name) VALUES (?, ?, ?)",
            (version, phase.id, phase.name),
        )
        return phase

    def upsert_epic(self, version: str, epic: Epic) -> Epic:
        self.db.execute(
            "INSERT OR REPLACE INTO epics (version, phase, id, name, description) "
            "VALUES (?, ?, ?, ?, ?)",
            (version, epic.phase, epic.id, epic.name, epic.description),
        )
        return epic

    # -- Snapshots --

    def get_prd(self, version: str) -> PRD:
        """Snapshot of one version, or of every version for ``all``.

        Raises:
            NotFoundError: If the version is unknown.

        """
        if version == ALL_VERSIONS:
            return self._get_all()
        known = self.get_version(version)
        if known is None:
            raise NotFoundError(f"Version {version} not found")
        project_row = self.db.fetchone("SELECT project FROM versions WHERE version = ?", (version,))
        phases = [
            Phase(id=r["id"], name=r["name"])
            for r in self.db.fetchall(
                "SELECT * FROM phases WHERE version = ? ORDER BY id", (version,)
            )
        ]
        epics = [
            Epic(phase=r["phase"], id=r["id"], name=r["name"], description=r["description"])
            for r in self.db.fetchall(
                "SELECT * FROM epics WHERE version = ? ORDER BY phase, id", (version,)
            )
        ]
        return PRD(
            version=version,
            project=project_row["project"] if project_row is not None else None,
            title=known.title,
            phases=phases,
            epics=epics,
            stories=self.stories.list(version),
        )

    def _get_all(self) -> PRD:
        stories: list[Story] = []
        for v in self.list_versions():
            stories.extend(self.stories.list(v.version))
        return PRD(version=ALL_VERSIONS, stories=stories)

    def import_prd(self, data: dict[str, Any], version: str | None = None) -> PRD:
        """Load a PRD document (JSON shape of GET /api/prd) into the store.

        Existing stories are left untouched.

        Args:
            data: Document with version, phases, epics and stories (or
                ``userStories``) keys.
            version: Overrides data["version"].

        Raises:
            ValidationError: If the document has no version or a story is malformed.

        """
        version = version or data.get("version")
        if not version:
            raise ValidationError("PRD document has no version", field="version")

        with self.db.transaction():
            self.upsert_version(
                Version(
                    version=version,
                    title=data.get("title"),
                    short_title=data.get("shortTitle") or data.get("short_title"),
                    description=data.get("description"),
                ),
                project=data.get("project"),
            )
            for phase in data.get("phases") or []:
                self.upsert_phase(version, Phase.model_validate(phase))
            for epic in data.get("epics") or []:
                self.upsert_epic(version, Epic.model_validate(epic))
            stories = [
                self._story_from_document(raw, version)
                for raw in data.get("stories") or data.get("userStories") or []
            ]
            created = self.stories.bulk_create(stories)
        logger.info("Imported %d story(ies) into %s", len(created), version)
        return self.get_prd(version)

    @staticmethod
    def _story_from_document(raw: dict[str, Any], version: str) -> Story:
        raw_id = str(raw.get("id", ""))
        _, number = split_story_id(raw_id.removeprefix(STORY_PREFIX))
        try:
            phase, epic, story_number = parse_story_number(number)
        except ValueError as e:
            raise ValidationError(str(e), field="id") from e
        fields = {
            "intent": raw.get("intent"),
            "description": raw.get("description"),
            "acceptance": raw.get("acceptance") or raw.get("acceptanceCriteria") or [],
            "depends_on": raw.get("depends_on") or raw.get("dependsOn") or [],
            "tags": raw.get("tags") or [],
            "passes": bool(raw.get("passes", False)),
            "merged": bool(raw.get("merged", False)),
            "skipped": bool(raw.get("skipped", False)),
            "skip_reason": raw.get("skip_reason") or raw.get("skipReason"),
            "pr_url": raw.get("pr_url") or raw.get("prUrl"),
            "priority": raw.get("priority", 0),
        }
        try:
            return Story(
                id=make_story_id(phase, epic, story_number, version),
                title=raw.get("title") or number,
                phase=phase,
                epic=epic,
                story_number=story_number,
                target_version=version,
                **fields,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid story {raw_id}: {e}", field="stories") from e
