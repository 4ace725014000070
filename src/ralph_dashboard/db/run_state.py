"""Run State Tracker: the single execution-state row.

All mutation of run state goes through RunStateTracker. Each operation is a
read-modify-write inside Database.transaction(), and every operation leaves
the record satisfying: current_story is set iff status is running,
waiting_gate or blocked.
"""

from __future__ import annotations

import logging
import re
import sqlite3

from ralph_dashboard.core.exceptions import RalphDashboardError, ValidationError
from ralph_dashboard.core.models import RunState
from ralph_dashboard.core.types import ACTIVE_RUN_STATUSES, RunStatus
from ralph_dashboard.db.database import Database, now_iso

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_error(message: str) -> str:
    """Collapse whitespace so cosmetic differences do not break a failure streak."""
    return _WHITESPACE_RE.sub(" ", message).strip()


class RunStateTracker:
    """Operations over the singleton run_state row.

    Args:
        db: Open database.

    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self) -> RunState:
        """Return the current run state."""
        row = self.db.fetchone("SELECT * FROM run_state WHERE id = 1")
        if row is None:
            raise RalphDashboardError("run_state row is missing; database not initialized")
        return self._row_to_state(row)

    def start(self, story_id: str, branch: str | None = None) -> RunState:
        """Begin work on a story.

        Sets current_story, status=running, attempts=1, clears last_error and
        records the working branch on the story.
        """
        now = now_iso()
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE run_state SET current_story = ?, status = ?, attempts = 1, "
                "last_error = NULL, started_at = ?, updated_at = ? WHERE id = 1",
                (story_id, RunStatus.RUNNING.value, now, now),
            )
            if branch:
                conn.execute(
                    "UPDATE stories SET working_branch = ?, updated_at = ? WHERE id = ?",
                    (branch, now, story_id),
                )
        logger.info("Started story %s on branch %s", story_id, branch)
        return self.get()

    def complete_story(self, story_id: str, pr_url: str | None = None) -> RunState:
        """Finish a story and return to idle.

        Clears current story, attempts and failure tracking, records
        last_completed and removes the story's checkpoints.
        """
        now = now_iso()
        with self.db.transaction() as conn:
            if pr_url:
                conn.execute(
                    "UPDATE stories SET pr_url = ?, updated_at = ? WHERE id = ?",
                    (pr_url, now, story_id),
                )
            conn.execute(
                "UPDATE run_state SET current_story = NULL, status = ?, attempts = 0, "
                "last_completed = ?, last_error = NULL, failure_count = 0, updated_at = ? "
                "WHERE id = 1",
                (RunStatus.IDLE.value, story_id, now),
            )
            conn.execute("DELETE FROM checkpoints WHERE story_id = ?", (story_id,))
        logger.info("Completed story %s", story_id)
        return self.get()

    def record_failure(self, message: str) -> int:
        """Record a failure message.

        A message equal to the previous last_error (after whitespace
        normalization) extends the streak, anything else restarts it at 1.

        Returns:
            New failure_count.

        """
        message = normalize_error(message)
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT last_error, failure_count FROM run_state WHERE id = 1"
            ).fetchone()
            previous = row["last_error"]
            if previous is not None and normalize_error(previous) == message:
                count = row["failure_count"] + 1
            else:
                count = 1
            conn.execute(
                "UPDATE run_state SET last_error = ?, failure_count = ?, updated_at = ? "
                "WHERE id = 1",
                (message, count, now_iso()),
            )
        logger.warning("Failure recorded (%d in a row): %s", count, message)
        return count

    def clear_failure(self) -> None:
        self.db.execute(
            "UPDATE run_state SET last_error = NULL, failure_count = 0, updated_at = ? "
            "WHERE id = 1",
            (now_iso(),),
        )

    def increment_attempt(self) -> int:
        """Increment attempts and return the post-increment count."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE run_state SET attempts = attempts + 1, updated_at = ? WHERE id = 1",
                (now_iso(),),
            )
            row = conn.execute("SELECT attempts FROM run_state WHERE id = 1").fetchone()
        return int(row["attempts"])

    def set_status(self, status: RunStatus | str, story_id: str | None = None) -> RunState:
        """Set run status, keeping current_story consistent with it.

        Args:
            status: New status.
            story_id: Story to work on. Required for running/waiting_gate/blocked
                unless one is already current. Ignored (cleared) otherwise.

        Raises:
            ValidationError: If an active status has no story to point at.

        """
        try:
            status = RunStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid run status: {status}", field="status") from e

        with self.db.transaction() as conn:
            row = conn.execute("SELECT current_story FROM run_state WHERE id = 1").fetchone()
            if status in ACTIVE_RUN_STATUSES:
                current = story_id or row["current_story"]
                if current is None:
                    raise ValidationError(
                        f"Status {status.value} requires a current story", field="storyId"
                    )
            else:
                current = None
            conn.execute(
                "UPDATE run_state SET status = ?, current_story = ?, updated_at = ? WHERE id = 1",
                (status.value, current, now_iso()),
            )
        logger.debug("Run status -> %s (%s)", status.value, current)
        return self.get()

    def stop(self) -> RunState:
        """Return to idle. last_error is kept for the operator to read."""
        self.db.execute(
            "UPDATE run_state SET status = ?, current_story = NULL, attempts = 0, updated_at = ? "
            "WHERE id = 1",
            (RunStatus.IDLE.value, now_iso()),
        )
        logger.info("Execution stopped")
        return self.get()

    def reset_state(self) -> RunState:
        """Restore defaults, preserving last_completed."""
        self.db.execute(
            "UPDATE run_state SET current_story = NULL, status = ?, attempts = 0, "
            "last_error = NULL, failure_count = 0, started_at = NULL, updated_at = ? WHERE id = 1",
            (RunStatus.IDLE.value, now_iso()),
        )
        logger.info("Run state reset")
        return self.get()

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> RunState:
        return RunState(
            current_story=row["current_story"],
            status=RunStatus(row["status"]),
            attempts=row["attempts"],
            last_completed=row["last_completed"],
            last_error=row["last_error"],
            failure_count=row["failure_count"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
        )
