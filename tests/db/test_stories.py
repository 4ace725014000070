"""Tests for StoryStore."""

import pytest

from ralph_dashboard.core.exceptions import ConflictError, NotFoundError, ValidationError
from ralph_dashboard.db import Stores


class TestResolve:
    """Full IDs and bare story numbers."""

    def test_full_id(self, stores: Stores, seeded_version) -> None:
        assert stores.stories.resolve("v0.1:1.1.2").title == "Story 1.1.2"

    def test_bare_number(self, stores: Stores, seeded_version) -> None:
        assert stores.stories.resolve("1.1.2").id == "v0.1:1.1.2"

    def test_bare_number_ambiguous_across_versions(self, stores: Stores, make_story) -> None:
        make_story(1, 1, 1, version="v0.1")
        make_story(1, 1, 1, version="v0.2")

        with pytest.raises(ValidationError, match="ambiguous"):
            stores.stories.resolve("1.1.1")

        assert stores.stories.resolve("1.1.1", version="v0.2").id == "v0.2:1.1.1"

    def test_unknown(self, stores: Stores, seeded_version) -> None:
        with pytest.raises(NotFoundError):
            stores.stories.resolve("9.9.9")


class TestCreate:
    def test_duplicate_id_conflicts(self, stores: Stores, make_story) -> None:
        make_story(1, 1, 1)

        with pytest.raises(ConflictError):
            make_story(1, 1, 1)

    def test_add_numbers_after_last_in_epic(self, stores: Stores, seeded_version) -> None:
        story = stores.stories.add("v0.1", "Export CSV", phase=1, epic=1, tags=["api"])

        assert story.id == "v0.1:1.1.4"
        assert story.story_number == 4
        assert story.tags == ["api"]

    def test_add_first_in_new_epic(self, stores: Stores, seeded_version) -> None:
        assert stores.stories.add("v0.1", "Audit log", phase=2, epic=1).id == "v0.1:2.1.1"

    def test_list_orders_by_number(self, stores: Stores, make_story) -> None:
        make_story(2, 1, 1)
        make_story(1, 2, 1)
        make_story(1, 1, 10)
        make_story(1, 1, 2)

        ids = [s.id for s in stores.stories.list("v0.1")]

        assert ids == ["v0.1:1.1.2", "v0.1:1.1.10", "v0.1:1.2.1", "v0.1:2.1.1"]


class TestUpdate:
    def test_update_fields(self, stores: Stores, seeded_version) -> None:
        story = stores.stories.update(
            "v0.1:1.1.1", {"title": "Schema", "acceptance": ["Migration runs"], "priority": 2}
        )

        assert story.title == "Schema"
        assert story.acceptance == ["Migration runs"]
        assert story.priority == 2

    def test_unknown_field_rejected(self, stores: Stores, seeded_version) -> None:
        with pytest.raises(ValidationError) as exc_info:
            stores.stories.update("v0.1:1.1.1", {"phase": 3})

        assert exc_info.value.field == "phase"

    def test_passes_sets_passed_at(self, stores: Stores, seeded_version) -> None:
        story = stores.stories.update("v0.1:1.1.1", {"passes": True})

        assert story.passes
        assert story.passed_at is not None

    def test_merged_is_terminal(self, stores: Stores, seeded_version) -> None:
        # GIVEN: Merged story
        stores.stories.mark_merged("v0.1:1.1.1", "abc123")

        # WHEN / THEN: Un-merging fails
        with pytest.raises(ValidationError) as exc_info:
            stores.stories.update("v0.1:1.1.1", {"merged": False})
        assert exc_info.value.field == "merged"

        # AND: The story stays merged (and passed)
        story = stores.stories.require("v0.1:1.1.1")
        assert story.merged
        assert story.passes
        assert story.merge_commit == "abc123"

    @pytest.mark.parametrize("value", [None, 0, ""])
    def test_falsy_merged_rejected(self, stores: Stores, seeded_version, value) -> None:
        stores.stories.mark_merged("v0.1:1.1.1")

        with pytest.raises(ValidationError):
            stores.stories.update("v0.1:1.1.1", {"merged": value})

        assert stores.stories.require("v0.1:1.1.1").merged

    def test_merged_again_is_allowed(self, stores: Stores, seeded_version) -> None:
        stores.stories.mark_merged("v0.1:1.1.1")

        story = stores.stories.update("v0.1:1.1.1", {"merged": True, "title": "Renamed"})

        assert story.merged
        assert story.title == "Renamed"

    def test_update_missing_story(self, stores: Stores) -> None:
        with pytest.raises(NotFoundError):
            stores.stories.update("v0.1:9.9.9", {"title": "x"})


class TestFlags:
    def test_mark_passed_is_idempotent(self, stores: Stores, seeded_version) -> None:
        first = stores.stories.mark_passed("v0.1:1.1.1")

        second = stores.stories.mark_passed("v0.1:1.1.1")

        assert second.passes
        assert second.passed_at == first.passed_at

    def test_skip(self, stores: Stores, seeded_version) -> None:
        story = stores.stories.skip("v0.1:1.1.3", "Out of scope")

        assert story.skipped
        assert story.skip_reason == "Out of scope"

    def test_recently_passed_newest_first(self, stores: Stores, seeded_version) -> None:
        stores.stories.mark_passed("v0.1:1.1.1")
        stores.stories.mark_passed("v0.1:1.1.2")

        recent = stores.stories.recently_passed(limit=5)

        assert [s.id for s in recent] == ["v0.1:1.1.2", "v0.1:1.1.1"]
