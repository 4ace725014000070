"""Metrics: one record per external agent invocation."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ralph_dashboard.core.exceptions import RalphDashboardError
from ralph_dashboard.core.models import MetricRecord
from ralph_dashboard.db.database import Database, now_iso

logger = logging.getLogger(__name__)


class MetricsStore:
    """Append-only agent call log with aggregation."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def record(
        self,
        story_id: str,
        attempt: int,
        duration_seconds: float,
        success: bool,
        error: str | None = None,
    ) -> MetricRecord:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO metrics "
                "(story_id, attempt, duration_seconds, success, error, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (story_id, attempt, duration_seconds, int(success), error, now_iso()),
            )
            metric_id = cursor.lastrowid
        row = self.db.fetchone("SELECT * FROM metrics WHERE id = ?", (metric_id,))
        if row is None:
            raise RalphDashboardError(f"Metric {metric_id} was not stored")
        return self._row_to_metric(row)

    def list(self, story_id: str | None = None, limit: int = 100) -> list[MetricRecord]:
        """Recent records, newest first."""
        if story_id is None:
            rows = self.db.fetchall("SELECT * FROM metrics ORDER BY id DESC LIMIT ?", (limit,))
        else:
            rows = self.db.fetchall(
                "SELECT * FROM metrics WHERE story_id = ? ORDER BY id DESC LIMIT ?",
                (story_id, limit),
            )
        return [self._row_to_metric(r) for r in rows]

    def summary(self) -> dict[str, Any]:
        """Aggregate totals and per-story breakdown."""
        totals = self.db.fetchone(
            "SELECT COUNT(*) AS runs, COALESCE(SUM(success), 0) AS successes, "
            "COALESCE(SUM(duration_seconds), 0) AS duration FROM metrics"
        )
        per_story = self.db.fetchall(
            "SELECT story_id, COUNT(*) AS runs, SUM(success) AS successes, "
            "SUM(duration_seconds) AS duration FROM metrics GROUP BY story_id ORDER BY story_id"
        )
        runs = int(totals["runs"]) if totals is not None else 0
        successes = int(totals["successes"]) if totals is not None else 0
        return {
            "total_runs": runs,
            "successes": successes,
            "failures": runs - successes,
            "total_duration_seconds": float(totals["duration"]) if totals is not None else 0.0,
            "stories": {
                r["story_id"]: {
                    "runs": int(r["runs"]),
                    "successes": int(r["successes"]),
                    "failures": int(r["runs"]) - int(r["successes"]),
                    "duration_seconds": float(r["duration"]),
                }
                for r in per_story
            },
        }

    @staticmethod
    def _row_to_metric(row: sqlite3.Row) -> MetricRecord:
        return MetricRecord(
            id=row["id"],
            story_id=row["story_id"],
            attempt=row["attempt"],
            duration_seconds=row["duration_seconds"],
            success=bool(row["success"]),
            error=row["error"],
            created_at=row["created_at"],
        )
