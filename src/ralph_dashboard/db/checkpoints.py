"""Checkpoint Log: per-story stage markers used to resume after a crash."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ralph_dashboard.core.exceptions import RalphDashboardError
from ralph_dashboard.core.models import Checkpoint
from ralph_dashboard.core.types import CHECKPOINT_ORDER, CheckpointStage
from ralph_dashboard.db.database import Database, from_json, now_iso, to_json

logger = logging.getLogger(__name__)


class CheckpointLog:
    """Save and query (story_id, stage) checkpoints."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def save(
        self,
        story_id: str,
        stage: CheckpointStage | str,
        data: dict[str, Any] | None = None,
        attempt: int = 0,
    ) -> Checkpoint:
        """Save a checkpoint, overwriting an existing one for the same stage."""
        stage = CheckpointStage(stage)
        self.db.execute(
            "INSERT OR REPLACE INTO checkpoints (story_id, stage, data, attempt, at) "
            "VALUES (?, ?, ?, ?, ?)",
            (story_id, stage.value, to_json(data or {}), attempt, now_iso()),
        )
        logger.debug("Checkpoint %s for %s", stage.value, story_id)
        checkpoint = self.get(story_id, stage)
        if checkpoint is None:
            raise RalphDashboardError(f"Checkpoint {stage.value} for {story_id} was not stored")
        return checkpoint

    def get(self, story_id: str, stage: CheckpointStage | str) -> Checkpoint | None:
        row = self.db.fetchone(
            "SELECT * FROM checkpoints WHERE story_id = ? AND stage = ?",
            (story_id, CheckpointStage(stage).value),
        )
        return self._row_to_checkpoint(row) if row is not None else None

    def has(self, story_id: str, stage: CheckpointStage | str) -> bool:
        return self.get(story_id, stage) is not None

    def list(self, story_id: str) -> list[Checkpoint]:
        """Checkpoints of a story in stage order."""
        rows = self.db.fetchall("SELECT * FROM checkpoints WHERE story_id = ?", (story_id,))
        checkpoints = [self._row_to_checkpoint(r) for r in rows]
        return sorted(checkpoints, key=lambda c: CHECKPOINT_ORDER.index(c.stage))

    def completed_stages(self, story_id: str) -> set[CheckpointStage]:
        return {c.stage for c in self.list(story_id)}

    def latest(self, story_id: str) -> Checkpoint | None:
        """Furthest stage reached by a story."""
        checkpoints = self.list(story_id)
        return checkpoints[-1] if checkpoints else None

    def clear(self, story_id: str) -> int:
        """Delete all checkpoints of a story. Returns rows removed."""
        removed = self.db.execute("DELETE FROM checkpoints WHERE story_id = ?", (story_id,))
        if removed:
            logger.debug("Cleared %d checkpoint(s) for %s", removed, story_id)
        return removed

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            story_id=row["story_id"],
            stage=CheckpointStage(row["stage"]),
            data=from_json(row["data"], {}),
            attempt=row["attempt"],
            at=row["at"],
        )
