"""Tests for CheckpointLog."""

import pytest

from ralph_dashboard.core.types import CheckpointStage
from ralph_dashboard.db import Stores


class TestCheckpointLog:
    def test_save_and_get(self, stores: Stores, seeded_version) -> None:
        story_id = seeded_version[0].id

        saved = stores.checkpoints.save(
            story_id, CheckpointStage.BRANCH_CREATED, {"branch": "ralph/1.1.1"}, attempt=2
        )

        assert saved.stage == CheckpointStage.BRANCH_CREATED
        assert saved.data == {"branch": "ralph/1.1.1"}
        assert saved.attempt == 2
        assert stores.checkpoints.has(story_id, "branch_created")

    def test_save_overwrites_same_stage(self, stores: Stores, seeded_version) -> None:
        story_id = seeded_version[0].id
        stores.checkpoints.save(story_id, CheckpointStage.CLAUDE_STARTED, {"attempt": 1})

        stores.checkpoints.save(story_id, CheckpointStage.CLAUDE_STARTED, {"attempt": 2})

        checkpoints = stores.checkpoints.list(story_id)
        assert len(checkpoints) == 1
        assert checkpoints[0].data == {"attempt": 2}

    def test_list_is_in_stage_order(self, stores: Stores, seeded_version) -> None:
        # GIVEN: Stages saved out of order
        story_id = seeded_version[0].id
        stores.checkpoints.save(story_id, CheckpointStage.CLAUDE_STARTED)
        stores.checkpoints.save(story_id, CheckpointStage.EXTERNAL_DEPS_COMPLETE)
        stores.checkpoints.save(story_id, CheckpointStage.BRANCH_CREATED)

        # WHEN / THEN: Listed in progression order, latest is furthest
        stages = [c.stage for c in stores.checkpoints.list(story_id)]
        assert stages == [
            CheckpointStage.EXTERNAL_DEPS_COMPLETE,
            CheckpointStage.BRANCH_CREATED,
            CheckpointStage.CLAUDE_STARTED,
        ]
        latest = stores.checkpoints.latest(story_id)
        assert latest is not None
        assert latest.stage == CheckpointStage.CLAUDE_STARTED

    def test_checkpoints_are_per_story(self, stores: Stores, seeded_version) -> None:
        stores.checkpoints.save(seeded_version[0].id, CheckpointStage.CLAUDE_STARTED)

        assert stores.checkpoints.list(seeded_version[1].id) == []
        assert stores.checkpoints.latest(seeded_version[1].id) is None

    def test_clear(self, stores: Stores, seeded_version) -> None:
        story_id = seeded_version[0].id
        stores.checkpoints.save(story_id, CheckpointStage.CLAUDE_STARTED)
        stores.checkpoints.save(story_id, CheckpointStage.CLAUDE_COMPLETE)

        assert stores.checkpoints.clear(story_id) == 2
        assert stores.checkpoints.completed_stages(story_id) == set()

    def test_unknown_stage_raises(self, stores: Stores, seeded_version) -> None:
        with pytest.raises(ValueError):
            stores.checkpoints.save(seeded_version[0].id, "deployed")
