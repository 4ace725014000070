"""Tests for domain models, story ID helpers and error serialization."""

import pytest

from ralph_dashboard.core.exceptions import (
    ConflictError,
    HandoffTransitionError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from ralph_dashboard.core.models import Story, derive_story_status
from ralph_dashboard.core.types import (
    StoryStatus,
    make_story_id,
    parse_story_number,
    split_story_id,
    story_number_of,
)


def _story(**fields) -> Story:
    return Story(
        id="v0.1:1.2.3",
        title="Login form",
        phase=1,
        epic=2,
        story_number=3,
        target_version="v0.1",
        **fields,
    )


class TestStoryIds:
    def test_split_prefixed(self) -> None:
        assert split_story_id("v0.1:1.2.3") == ("v0.1", "1.2.3")

    def test_split_bare(self) -> None:
        assert split_story_id("1.2.3") == (None, "1.2.3")

    def test_make_and_number_round_trip(self) -> None:
        story_id = make_story_id(2, 10, 4, "v1.0")

        assert story_id == "v1.0:2.10.4"
        assert story_number_of(story_id) == "2.10.4"

    def test_parse_story_number_rejects_garbage(self) -> None:
        with pytest.raises(ValueError, match="Invalid story number"):
            parse_story_number("1.2")

    def test_story_number_property(self) -> None:
        assert _story().number == "1.2.3"


class TestDeriveStoryStatus:
    """Exactly one derived status per story."""

    def test_pending_by_default(self) -> None:
        assert derive_story_status(_story()) == StoryStatus.PENDING

    def test_in_progress_only_when_current(self) -> None:
        story = _story()

        assert derive_story_status(story, "v0.1:1.2.3") == StoryStatus.IN_PROGRESS
        assert derive_story_status(story, "v0.1:9.9.9") == StoryStatus.PENDING

    def test_passed(self) -> None:
        assert derive_story_status(_story(passes=True)) == StoryStatus.PASSED

    def test_merged_wins_over_skipped_and_passed(self) -> None:
        story = _story(passes=True, merged=True, skipped=True)

        assert derive_story_status(story, story.id) == StoryStatus.MERGED

    def test_skipped_wins_over_passed(self) -> None:
        assert derive_story_status(_story(passes=True, skipped=True)) == StoryStatus.SKIPPED

    def test_is_finished(self) -> None:
        assert not _story().is_finished
        assert _story(skipped=True).is_finished


class TestErrorSerialization:
    """Errors carry their HTTP status and JSON body."""

    def test_validation_error_names_field(self) -> None:
        error = ValidationError("bad", field="storyId")

        assert error.status_code == 400
        assert error.to_dict() == {"error": "bad", "field": "storyId"}

    def test_validation_error_without_field(self) -> None:
        assert ValidationError("bad").to_dict() == {"error": "bad"}

    def test_transition_error_is_validation_error(self) -> None:
        error = HandoffTransitionError("no", from_agent="analyst", to_agent="documenter")

        assert isinstance(error, ValidationError)
        assert error.to_dict()["field"] == "toAgent"

    def test_conflict_includes_existing(self) -> None:
        error = ConflictError("dup", existing={"id": 1})

        assert error.status_code == 409
        assert error.to_dict() == {"error": "dup", "existing": {"id": 1}}

    def test_not_found_and_upstream_status_codes(self) -> None:
        assert NotFoundError("x").status_code == 404
        assert UpstreamError("x", raw="tail").to_dict() == {"error": "x", "raw": "tail"}
