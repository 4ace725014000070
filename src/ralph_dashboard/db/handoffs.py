"""Handoff Pipeline: state machine over agent-to-agent work transfers.

Agents pass a story along orchestrator -> analyst -> implementer ->
reviewer -> documenter -> orchestrator. A reviewer may send the story back
to the implementer. Any rejection can be returned to the sender with
reject_and_return(), which records the reverse edge without deleting history.

The pipeline position of a story is derived from its pending handoffs and
never stored.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from ralph_dashboard.core.exceptions import (
    ConflictError,
    HandoffTransitionError,
    NotFoundError,
    RalphDashboardError,
    ValidationError,
)
from ralph_dashboard.core.models import Handoff, utc_now
from ralph_dashboard.core.types import AgentType, HandoffStatus
from ralph_dashboard.db.database import Database, from_json, now_iso, to_json

logger = logging.getLogger(__name__)

TRANSITIONS: dict[AgentType, frozenset[AgentType]] = {
    AgentType.ORCHESTRATOR: frozenset({AgentType.ANALYST}),
    AgentType.ANALYST: frozenset({AgentType.IMPLEMENTER}),
    AgentType.IMPLEMENTER: frozenset({AgentType.REVIEWER}),
    AgentType.REVIEWER: frozenset({AgentType.DOCUMENTER, AgentType.IMPLEMENTER}),
    AgentType.DOCUMENTER: frozenset({AgentType.ORCHESTRATOR}),
}


def parse_agent(value: str | AgentType, field: str = "agent") -> AgentType:
    """Convert an agent name to AgentType.

    Raises:
        ValidationError: If the name is not a known agent.

    """
    try:
        return AgentType(value)
    except ValueError as e:
        valid = ", ".join(a.value for a in AgentType)
        raise ValidationError(
            f"Invalid {field}: {value} (expected one of {valid})", field=field
        ) from e


def is_legal_transition(from_agent: AgentType, to_agent: AgentType) -> bool:
    return to_agent in TRANSITIONS.get(from_agent, frozenset())


class HandoffPipeline:
    """Create and resolve handoffs for stories."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # -- Queries --

    def get(self, handoff_id: int) -> Handoff | None:
        row = self.db.fetchone("SELECT * FROM handoffs WHERE id = ?", (handoff_id,))
        return self._row_to_handoff(row) if row is not None else None

    def require(self, handoff_id: int) -> Handoff:
        handoff = self.get(handoff_id)
        if handoff is None:
            raise NotFoundError(f"Handoff {handoff_id} not found")
        return handoff

    def get_pending(self, story_id: str, agent: str | AgentType | None = None) -> list[Handoff]:
        """Pending handoffs of a story, newest first, optionally to one agent."""
        sql = "SELECT * FROM handoffs WHERE story_id = ? AND status = ?"
        params: list[Any] = [story_id, HandoffStatus.PENDING.value]
        if agent is not None:
            sql += " AND to_agent = ?"
            params.append(parse_agent(agent).value)
        sql += " ORDER BY id DESC"
        return [self._row_to_handoff(r) for r in self.db.fetchall(sql, params)]

    def list_for_story(self, story_id: str) -> list[Handoff]:
        """Full handoff history of a story, oldest first."""
        rows = self.db.fetchall(
            "SELECT * FROM handoffs WHERE story_id = ? ORDER BY id", (story_id,)
        )
        return [self._row_to_handoff(r) for r in rows]

    def current_state(self, story_id: str) -> dict[str, Any]:
        """Derive where a story sits in the pipeline.

        Returns:
            Dict with story_id, current_agent (to_agent of the newest pending
            handoff, else "orchestrator"), the pending handoffs and the history.

        """
        pending = self.get_pending(story_id)
        current = pending[0].to_agent if pending else AgentType.ORCHESTRATOR
        return {
            "story_id": story_id,
            "current_agent": current.value,
            "pending": [h.model_dump(mode="json") for h in pending],
            "handoffs": [h.model_dump(mode="json") for h in self.list_for_story(story_id)],
        }

    def find_stale(self, minutes: float, now: datetime | None = None) -> list[Handoff]:
        """Pending handoffs created more than ``minutes`` ago."""
        cutoff = (now or utc_now()) - timedelta(minutes=minutes)
        rows = self.db.fetchall(
            "SELECT * FROM handoffs WHERE status = ? ORDER BY id", (HandoffStatus.PENDING.value,)
        )
        handoffs = [self._row_to_handoff(r) for r in rows]
        return [h for h in handoffs if h.created_at < cutoff]

    # -- Transitions --

    def create(
        self,
        story_id: str,
        from_agent: str | AgentType,
        to_agent: str | AgentType,
        payload: dict[str, Any] | None = None,
    ) -> Handoff:
        """Create a pending handoff.

        Raises:
            ValidationError: If an agent name is unknown.
            HandoffTransitionError: If the edge is not in TRANSITIONS.
            ConflictError: If a pending handoff to to_agent exists for the story.

        """
        source = parse_agent(from_agent, "fromAgent")
        target = parse_agent(to_agent, "toAgent")
        if not is_legal_transition(source, target):
            raise HandoffTransitionError(
                f"Illegal handoff {source.value} -> {target.value}",
                from_agent=source.value,
                to_agent=target.value,
            )
        return self._insert(story_id, source, target, payload or {})

    def accept(self, handoff_id: int, payload: dict[str, Any] | None = None) -> Handoff:
        """Accept a pending handoff, merging payload into the stored one."""
        with self.db.transaction() as conn:
            handoff = self._require_pending(handoff_id)
            merged = {**handoff.payload, **(payload or {})}
            conn.execute(
                "UPDATE handoffs SET status = ?, payload = ?, updated_at = ? WHERE id = ?",
                (HandoffStatus.ACCEPTED.value, to_json(merged), now_iso(), handoff_id),
            )
        logger.info("Handoff %d accepted by %s", handoff_id, handoff.to_agent.value)
        return self.require(handoff_id)

    def reject(self, handoff_id: int, reason: str) -> Handoff:
        """Reject a pending handoff with a reason."""
        if not reason:
            raise ValidationError("Rejection reason is required", field="reason")
        with self.db.transaction() as conn:
            handoff = self._require_pending(handoff_id)
            conn.execute(
                "UPDATE handoffs SET status = ?, rejection_reason = ?, updated_at = ? WHERE id = ?",
                (HandoffStatus.REJECTED.value, reason, now_iso(), handoff_id),
            )
        logger.info("Handoff %d rejected by %s: %s", handoff_id, handoff.to_agent.value, reason)
        return self.require(handoff_id)

    def reject_and_return(self, handoff_id: int, reason: str) -> tuple[Handoff, Handoff]:
        """Reject a handoff and send the story back to the sender.

        Returns:
            Tuple of (rejected handoff, new return handoff).

        """
        with self.db.transaction():
            rejected = self.reject(handoff_id, reason)
            payload = {
                **rejected.payload,
                "rejection_reason": reason,
                "rejected_by": rejected.to_agent.value,
            }
            returned = self._insert(
                rejected.story_id, rejected.to_agent, rejected.from_agent, payload
            )
        return rejected, returned

    def timeout(self, handoff_id: int, reason: str = "timeout") -> Handoff:
        """Mark a pending handoff as timed out."""
        with self.db.transaction() as conn:
            self._require_pending(handoff_id)
            conn.execute(
                "UPDATE handoffs SET status = ?, rejection_reason = ?, updated_at = ? WHERE id = ?",
                (HandoffStatus.TIMEOUT.value, reason, now_iso(), handoff_id),
            )
        return self.require(handoff_id)

    def timeout_stale(self, minutes: float, now: datetime | None = None) -> list[Handoff]:
        """Time out every handoff pending longer than ``minutes``."""
        timed_out = [
            self.timeout(h.id, f"Pending for more than {minutes:g} minutes")
            for h in self.find_stale(minutes, now=now)
        ]
        if timed_out:
            logger.warning("Timed out %d stale handoff(s)", len(timed_out))
        return timed_out

    def close_for_story(self, story_id: str, reason: str = "Story completed") -> list[Handoff]:
        """Time out all pending handoffs of a story."""
        return [self.timeout(h.id, reason) for h in self.get_pending(story_id)]

    # -- Internals --

    def _require_pending(self, handoff_id: int) -> Handoff:
        handoff = self.require(handoff_id)
        if handoff.status != HandoffStatus.PENDING:
            raise ValidationError(
                f"Handoff {handoff_id} is {handoff.status.value}, not pending", field="handoffId"
            )
        return handoff

    def _insert(
        self,
        story_id: str,
        source: AgentType,
        target: AgentType,
        payload: dict[str, Any],
    ) -> Handoff:
        with self.db.transaction() as conn:
            existing = self.get_pending(story_id, target)
            if existing:
                raise ConflictError(
                    f"Pending handoff to {target.value} already exists for story {story_id}",
                    existing=existing[0].model_dump(mode="json"),
                )
            cursor = conn.execute(
                "INSERT INTO handoffs "
                "(story_id, from_agent, to_agent, status, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (story_id, source.value, target.value, HandoffStatus.PENDING.value,
                 to_json(payload), now_iso()),
            )
            handoff_id = cursor.lastrowid
        logger.info("Handoff %s -> %s for %s", source.value, target.value, story_id)
        if handoff_id is None:
            raise RalphDashboardError(f"Handoff for {story_id} was not stored")
        return self.require(handoff_id)

    @staticmethod
    def _row_to_handoff(row: sqlite3.Row) -> Handoff:
        return Handoff(
            id=row["id"],
            story_id=row["story_id"],
            from_agent=AgentType(row["from_agent"]),
            to_agent=AgentType(row["to_agent"]),
            status=HandoffStatus(row["status"]),
            payload=from_json(row["payload"], {}),
            rejection_reason=row["rejection_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
