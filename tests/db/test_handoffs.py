"""Tests for the handoff pipeline state machine."""

from datetime import timedelta

import pytest

from ralph_dashboard.core.exceptions import (
    ConflictError,
    HandoffTransitionError,
    NotFoundError,
    ValidationError,
)
from ralph_dashboard.core.models import utc_now
from ralph_dashboard.core.types import AgentType, HandoffStatus
from ralph_dashboard.db import Stores

STORY = "v0.1:1.1.1"


class TestCreate:
    def test_legal_edge_creates_pending(self, stores: Stores) -> None:
        handoff = stores.handoffs.create(STORY, "orchestrator", "analyst", {"notes": "go"})

        assert handoff.status == HandoffStatus.PENDING
        assert handoff.from_agent == AgentType.ORCHESTRATOR
        assert handoff.to_agent == AgentType.ANALYST
        assert handoff.payload == {"notes": "go"}

    def test_illegal_edge_rejected(self, stores: Stores) -> None:
        # GIVEN / WHEN: analyst -> documenter skips implementer and reviewer
        with pytest.raises(HandoffTransitionError) as exc_info:
            stores.handoffs.create(STORY, "analyst", "documenter")

        # THEN: 400 naming both agents
        assert exc_info.value.status_code == 400
        assert exc_info.value.from_agent == "analyst"
        assert exc_info.value.to_agent == "documenter"

    def test_reviewer_may_send_back_to_implementer(self, stores: Stores) -> None:
        handoff = stores.handoffs.create(STORY, "reviewer", "implementer")

        assert handoff.to_agent == AgentType.IMPLEMENTER

    def test_unknown_agent_names_field(self, stores: Stores) -> None:
        with pytest.raises(ValidationError) as exc_info:
            stores.handoffs.create(STORY, "orchestrator", "tester")

        assert exc_info.value.field == "toAgent"

    def test_duplicate_pending_conflicts_until_resolved(self, stores: Stores) -> None:
        # GIVEN: Pending handoff to the analyst
        first = stores.handoffs.create(STORY, "orchestrator", "analyst")

        # WHEN: Creating another one to the same agent
        with pytest.raises(ConflictError) as exc_info:
            stores.handoffs.create(STORY, "orchestrator", "analyst")

        # THEN: 409 returns the existing handoff
        assert exc_info.value.existing is not None
        assert exc_info.value.existing["id"] == first.id

        # AND: After accepting it, a new one can be created
        stores.handoffs.accept(first.id)
        second = stores.handoffs.create(STORY, "orchestrator", "analyst")
        assert second.id != first.id

    def test_same_target_on_other_story_is_fine(self, stores: Stores) -> None:
        stores.handoffs.create(STORY, "orchestrator", "analyst")

        other = stores.handoffs.create("v0.1:1.1.2", "orchestrator", "analyst")

        assert other.story_id == "v0.1:1.1.2"


class TestResolve:
    def test_accept_merges_payload(self, stores: Stores) -> None:
        handoff = stores.handoffs.create(STORY, "implementer", "reviewer", {"branch": "b"})

        accepted = stores.handoffs.accept(handoff.id, {"reviewed": True})

        assert accepted.status == HandoffStatus.ACCEPTED
        assert accepted.payload == {"branch": "b", "reviewed": True}

    def test_accept_twice_fails(self, stores: Stores) -> None:
        handoff = stores.handoffs.create(STORY, "implementer", "reviewer")
        stores.handoffs.accept(handoff.id)

        with pytest.raises(ValidationError, match="not pending"):
            stores.handoffs.accept(handoff.id)

    def test_accept_unknown_is_not_found(self, stores: Stores) -> None:
        with pytest.raises(NotFoundError):
            stores.handoffs.accept(999)

    def test_reject_requires_reason(self, stores: Stores) -> None:
        handoff = stores.handoffs.create(STORY, "implementer", "reviewer")

        with pytest.raises(ValidationError) as exc_info:
            stores.handoffs.reject(handoff.id, "")

        assert exc_info.value.field == "reason"

    def test_reject_and_return_reverses_edge(self, stores: Stores) -> None:
        # GIVEN: Implementer handed to reviewer
        handoff = stores.handoffs.create(STORY, "implementer", "reviewer", {"pr": 7})

        # WHEN: Reviewer rejects
        rejected, returned = stores.handoffs.reject_and_return(handoff.id, "missing tests")

        # THEN: Original is rejected, a new pending handoff goes back
        assert rejected.status == HandoffStatus.REJECTED
        assert rejected.rejection_reason == "missing tests"
        assert returned.status == HandoffStatus.PENDING
        assert returned.from_agent == AgentType.REVIEWER
        assert returned.to_agent == AgentType.IMPLEMENTER
        assert returned.payload["rejection_reason"] == "missing tests"
        assert returned.payload["rejected_by"] == "reviewer"
        assert returned.payload["pr"] == 7

        # AND: History keeps both
        assert len(stores.handoffs.list_for_story(STORY)) == 2


class TestCurrentState:
    def test_no_handoffs_is_orchestrator(self, stores: Stores) -> None:
        state = stores.handoffs.current_state(STORY)

        assert state["current_agent"] == "orchestrator"
        assert state["pending"] == []

    def test_newest_pending_target(self, stores: Stores) -> None:
        first = stores.handoffs.create(STORY, "orchestrator", "analyst")
        stores.handoffs.accept(first.id)
        stores.handoffs.create(STORY, "analyst", "implementer")

        state = stores.handoffs.current_state(STORY)

        assert state["current_agent"] == "implementer"
        assert len(state["handoffs"]) == 2

    def test_get_pending_filters_by_agent(self, stores: Stores) -> None:
        stores.handoffs.create(STORY, "orchestrator", "analyst")
        stores.handoffs.create(STORY, "implementer", "reviewer")

        pending = stores.handoffs.get_pending(STORY, "reviewer")

        assert [h.to_agent for h in pending] == [AgentType.REVIEWER]


class TestStale:
    """Pending handoffs time out after the configured minutes."""

    def test_find_stale_only_returns_old_pending(self, stores: Stores) -> None:
        # GIVEN: One pending and one accepted handoff
        pending = stores.handoffs.create(STORY, "orchestrator", "analyst")
        accepted = stores.handoffs.create("v0.1:1.1.2", "orchestrator", "analyst")
        stores.handoffs.accept(accepted.id)

        # WHEN: Looking 31 minutes into the future with a 30 minute limit
        stale = stores.handoffs.find_stale(30, now=utc_now() + timedelta(minutes=31))

        # THEN: Only the pending one is stale
        assert [h.id for h in stale] == [pending.id]

    def test_fresh_pending_is_not_stale(self, stores: Stores) -> None:
        stores.handoffs.create(STORY, "orchestrator", "analyst")

        assert stores.handoffs.find_stale(30) == []

    def test_timeout_stale(self, stores: Stores) -> None:
        handoff = stores.handoffs.create(STORY, "orchestrator", "analyst")

        timed_out = stores.handoffs.timeout_stale(30, now=utc_now() + timedelta(hours=1))

        assert [h.status for h in timed_out] == [HandoffStatus.TIMEOUT]
        assert stores.handoffs.require(handoff.id).status == HandoffStatus.TIMEOUT

    def test_close_for_story(self, stores: Stores) -> None:
        stores.handoffs.create(STORY, "orchestrator", "analyst")
        stores.handoffs.create(STORY, "implementer", "reviewer")

        closed = stores.handoffs.close_for_story(STORY)

        assert len(closed) == 2
        assert stores.handoffs.get_pending(STORY) == []
