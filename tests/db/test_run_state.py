"""Tests for RunStateTracker: the singleton execution state."""

import pytest

from ralph_dashboard.core.exceptions import RalphDashboardError, ValidationError
from ralph_dashboard.core.types import CheckpointStage, RunStatus
from ralph_dashboard.db import Stores


class TestInitialState:
    def test_fresh_database_is_idle(self, stores: Stores) -> None:
        state = stores.run_state.get()

        assert state.status == RunStatus.IDLE
        assert state.current_story is None
        assert state.attempts == 0
        assert state.failure_count == 0

    def test_missing_row_raises(self, stores: Stores) -> None:
        stores.db.execute("DELETE FROM run_state")

        with pytest.raises(RalphDashboardError, match="run_state row is missing"):
            stores.run_state.get()


class TestStartAndComplete:
    """start() -> complete_story() round trip."""

    def test_start_sets_running_story(self, stores: Stores, seeded_version) -> None:
        # GIVEN: A story
        story = seeded_version[0]

        # WHEN: Starting it on a branch
        state = stores.run_state.start(story.id, "ralph/1.1.1")

        # THEN: Running, attempt 1, branch recorded on the story
        assert state.status == RunStatus.RUNNING
        assert state.current_story == story.id
        assert state.attempts == 1
        assert stores.stories.require(story.id).working_branch == "ralph/1.1.1"

    def test_start_clears_previous_error(self, stores: Stores, seeded_version) -> None:
        stores.run_state.record_failure("boom")

        state = stores.run_state.start(seeded_version[0].id)

        assert state.last_error is None

    def test_complete_returns_to_idle(self, stores: Stores, seeded_version) -> None:
        # GIVEN: Running story with a failure and checkpoints
        story = seeded_version[0]
        stores.run_state.start(story.id, "ralph/1.1.1")
        stores.run_state.record_failure("flaky test")
        stores.checkpoints.save(story.id, CheckpointStage.CLAUDE_STARTED)

        # WHEN: Completing it
        state = stores.run_state.complete_story(story.id, "https://github.com/o/r/pull/7")

        # THEN: Idle, nothing current, failure tracking cleared
        assert state.status == RunStatus.IDLE
        assert state.current_story is None
        assert state.attempts == 0
        assert state.last_completed == story.id
        assert state.last_error is None
        assert state.failure_count == 0

        # AND: PR recorded, checkpoints removed
        assert stores.stories.require(story.id).pr_url == "https://github.com/o/r/pull/7"
        assert stores.checkpoints.list(story.id) == []


class TestRecordFailure:
    """Consecutive identical failures extend the streak."""

    def test_first_failure_counts_one(self, stores: Stores) -> None:
        assert stores.run_state.record_failure("tests failed") == 1

    def test_same_message_increments(self, stores: Stores) -> None:
        stores.run_state.record_failure("tests failed")

        assert stores.run_state.record_failure("tests failed") == 2
        assert stores.run_state.get().failure_count == 2

    def test_different_message_resets_to_one(self, stores: Stores) -> None:
        stores.run_state.record_failure("tests failed")
        stores.run_state.record_failure("tests failed")

        count = stores.run_state.record_failure("lint failed")

        assert count == 1
        assert stores.run_state.get().last_error == "lint failed"

    def test_whitespace_differences_are_the_same_failure(self, stores: Stores) -> None:
        stores.run_state.record_failure("tests  failed\n")

        assert stores.run_state.record_failure(" tests failed") == 2

    def test_clear_failure(self, stores: Stores) -> None:
        stores.run_state.record_failure("x")

        stores.run_state.clear_failure()

        state = stores.run_state.get()
        assert state.last_error is None
        assert state.failure_count == 0


class TestSetStatus:
    """current_story is set iff the status is active."""

    def test_active_status_requires_story(self, stores: Stores) -> None:
        with pytest.raises(ValidationError) as exc_info:
            stores.run_state.set_status(RunStatus.RUNNING)

        assert exc_info.value.field == "storyId"

    def test_active_status_keeps_current_story(self, stores: Stores, seeded_version) -> None:
        stores.run_state.start(seeded_version[0].id)

        state = stores.run_state.set_status(RunStatus.BLOCKED)

        assert state.status == RunStatus.BLOCKED
        assert state.current_story == seeded_version[0].id

    def test_idle_clears_current_story(self, stores: Stores, seeded_version) -> None:
        stores.run_state.start(seeded_version[0].id)

        state = stores.run_state.set_status("idle", seeded_version[0].id)

        assert state.current_story is None

    def test_invalid_status_names_field(self, stores: Stores) -> None:
        with pytest.raises(ValidationError) as exc_info:
            stores.run_state.set_status("sleeping")

        assert exc_info.value.field == "status"

    def test_increment_attempt(self, stores: Stores, seeded_version) -> None:
        stores.run_state.start(seeded_version[0].id)

        assert stores.run_state.increment_attempt() == 2
        assert stores.run_state.increment_attempt() == 3


class TestStopAndReset:
    def test_stop_keeps_last_error(self, stores: Stores, seeded_version) -> None:
        stores.run_state.start(seeded_version[0].id)
        stores.run_state.record_failure("agent crashed")

        state = stores.run_state.stop()

        assert state.status == RunStatus.IDLE
        assert state.current_story is None
        assert state.last_error == "agent crashed"

    def test_reset_preserves_last_completed(self, stores: Stores, seeded_version) -> None:
        # GIVEN: One completed story, another blocked
        stores.run_state.start(seeded_version[0].id)
        stores.run_state.complete_story(seeded_version[0].id)
        stores.run_state.start(seeded_version[1].id)
        stores.run_state.record_failure("stuck")
        stores.run_state.set_status(RunStatus.BLOCKED)

        # WHEN: Resetting
        state = stores.run_state.reset_state()

        # THEN: Defaults restored except last_completed
        assert state.status == RunStatus.IDLE
        assert state.current_story is None
        assert state.last_error is None
        assert state.failure_count == 0
        assert state.last_completed == seeded_version[0].id
