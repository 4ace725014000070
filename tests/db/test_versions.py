"""Tests for PRDStore: versions, snapshots and PRD import."""

from pathlib import Path

import pytest

from ralph_dashboard.core.exceptions import NotFoundError, ValidationError
from ralph_dashboard.db import ALL_VERSIONS, Stores, open_project_database

PRD_DOCUMENT = {
    "version": "v0.1",
    "project": "shop",
    "title": "MVP",
    "phases": [{"id": 1, "name": "Foundation"}],
    "epics": [{"phase": 1, "id": 1, "name": "Storage"}],
    "userStories": [
        {"id": "1.1.1", "title": "Schema", "acceptanceCriteria": ["Tables exist"]},
        {"id": "STORY-1.1.2", "title": "Repo", "dependsOn": ["1.1.1"], "passes": True},
    ],
}


class TestImport:
    def test_import_document(self, stores: Stores) -> None:
        # WHEN: Importing a PRD document with camelCase keys
        prd = stores.prd.import_prd(PRD_DOCUMENT)

        # THEN: Version, structure and stories are stored
        assert prd.version == "v0.1"
        assert prd.project == "shop"
        assert [p.name for p in prd.phases] == ["Foundation"]
        assert [e.name for e in prd.epics] == ["Storage"]
        assert [s.id for s in prd.stories] == ["v0.1:1.1.1", "v0.1:1.1.2"]
        assert prd.stories[0].acceptance == ["Tables exist"]
        assert prd.stories[1].depends_on == ["1.1.1"]
        assert prd.stories[1].passes

    def test_reimport_keeps_existing_stories(self, stores: Stores) -> None:
        stores.prd.import_prd(PRD_DOCUMENT)
        stores.stories.update("v0.1:1.1.1", {"title": "Edited"})

        stores.prd.import_prd(PRD_DOCUMENT)

        assert stores.stories.require("v0.1:1.1.1").title == "Edited"

    def test_version_override(self, stores: Stores) -> None:
        prd = stores.prd.import_prd(PRD_DOCUMENT, version="v0.2")

        assert prd.stories[0].id == "v0.2:1.1.1"

    def test_missing_version(self, stores: Stores) -> None:
        with pytest.raises(ValidationError) as exc_info:
            stores.prd.import_prd({"stories": []})

        assert exc_info.value.field == "version"

    def test_malformed_story_id(self, stores: Stores) -> None:
        with pytest.raises(ValidationError) as exc_info:
            stores.prd.import_prd({"version": "v0.1", "stories": [{"id": "abc"}]})

        assert exc_info.value.field == "id"


class TestSnapshots:
    def test_unknown_version(self, stores: Stores) -> None:
        with pytest.raises(NotFoundError):
            stores.prd.get_prd("v9.9")

    def test_versions_found_on_stories(self, stores: Stores, make_story) -> None:
        make_story(1, 1, 1, version="v0.1")
        make_story(1, 1, 1, version="v0.2")

        assert [v.version for v in stores.prd.list_versions()] == ["v0.1", "v0.2"]

    def test_all_combines_versions(self, stores: Stores, make_story) -> None:
        make_story(1, 1, 1, version="v0.1")
        make_story(1, 1, 1, version="v0.2")

        prd = stores.prd.get_prd(ALL_VERSIONS)

        assert prd.version == ALL_VERSIONS
        assert len(prd.stories) == 2


class TestOpenProjectDatabase:
    def test_relative_path_under_project(self, tmp_path: Path) -> None:
        db = open_project_database(tmp_path, ".ralph/dashboard.db")
        try:
            assert Path(db.path) == tmp_path / ".ralph" / "dashboard.db"
            assert (tmp_path / ".ralph").is_dir()
        finally:
            db.close()
