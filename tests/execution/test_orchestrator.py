"""Tests for ExecutionOrchestrator with a mocked agent runner."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from ralph_dashboard.core.config import ExecutionSettings
from ralph_dashboard.core.exceptions import (
    AgentTimeoutError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ralph_dashboard.core.types import CheckpointStage, RunStatus
from ralph_dashboard.db import Stores
from ralph_dashboard.execution import ExecutionConfig, ExecutionOrchestrator, handle_signal
from ralph_dashboard.execution.agent import AgentResult, AgentRunner
from ralph_dashboard.execution.orchestrator import AUTO_CLARIFICATION, validate_story
from ralph_dashboard.execution.prompts import COMPLETE_MARKER

SIGNAL_URL = "http://127.0.0.1:9999/api/signal"


class RecordingEvents:
    """Event sink collecting everything the orchestrator emits."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.lines: list[str] = []

    async def broadcast_event(self, event_type: str, data: dict[str, Any]) -> int:
        self.events.append((event_type, data))
        return 1

    async def broadcast_output(self, line: str, provider: str | None = None) -> int:
        self.lines.append(line)
        return 1

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [data for kind, data in self.events if kind == event_type]


def completed(output: str = "All done") -> AgentResult:
    return AgentResult(output=f"{output}\n{COMPLETE_MARKER}", returncode=0, duration=1.5)


def failed(returncode: int = 1) -> AgentResult:
    return AgentResult(output="tests failed", returncode=returncode, duration=2.0)


@pytest.fixture
def runner() -> MagicMock:
    mock = MagicMock(spec=AgentRunner)
    mock.run = AsyncMock(return_value=completed())
    return mock


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def orchestrator(
    stores: Stores, runner: MagicMock, events: RecordingEvents
) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        stores,
        runner,
        events=events,
        settings=ExecutionSettings(max_repeated_failures=3),
        signal_url=SIGNAL_URL,
    )


def manual(**overrides: Any) -> ExecutionConfig:
    return ExecutionConfig(claude_timeout=5, **overrides)


# =============================================================================
# Single story
# =============================================================================


class TestSingleIteration:
    @pytest.mark.asyncio
    async def test_completion_marker_finishes_story(
        self,
        orchestrator: ExecutionOrchestrator,
        stores: Stores,
        runner: MagicMock,
        events: RecordingEvents,
        seeded_version,
    ) -> None:
        # WHEN: Running manually; only 1.1.1 has no unmet dependency
        result = await orchestrator.run("v0.1", manual())

        # THEN: 1.1.1 passed, run state back to idle
        assert result.status == "story_complete"
        assert result.story_id == "v0.1:1.1.1"
        assert result.completed == ["v0.1:1.1.1"]
        assert result.iterations == 1
        assert result.state is not None
        assert result.state.status == RunStatus.IDLE
        assert result.state.last_completed == "v0.1:1.1.1"

        story = stores.stories.require("v0.1:1.1.1")
        assert story.passes
        assert story.working_branch == "ralph/1.1.1"
        assert stores.checkpoints.list(story.id) == []

        # AND: Prompt carries the signal endpoint and timeout
        prompt, timeout = runner.run.await_args.args
        assert SIGNAL_URL in prompt
        assert "v0.1:1.1.1" in prompt
        assert timeout == 5

        # AND: Metrics and run_state were emitted
        assert stores.metrics.summary()["successes"] == 1
        assert events.of_type("metrics")
        assert events.of_type("run_state")[-1]["status"] == "idle"

    @pytest.mark.asyncio
    async def test_signal_during_agent_run_completes_with_pr(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, seeded_version
    ) -> None:
        # GIVEN: Agent signals complete with a PR and exits without the marker
        async def agent(prompt: str, timeout: float, on_output=None) -> AgentResult:
            await handle_signal(
                stores, "1.1.1", "complete", "done", pr_url="https://github.com/o/r/pull/1"
            )
            return AgentResult(output="bye", returncode=0, duration=1.0)

        runner.run.side_effect = agent

        # WHEN: Running
        result = await orchestrator.run("v0.1", manual())

        # THEN: Completed with the PR URL
        assert result.status == "story_complete"
        assert result.message == "https://github.com/o/r/pull/1"
        assert stores.stories.require("v0.1:1.1.1").pr_url == "https://github.com/o/r/pull/1"

    @pytest.mark.asyncio
    async def test_failure_blocks_then_gates_after_repeats(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, seeded_version
    ) -> None:
        # GIVEN: Agent always exits 1
        runner.run.return_value = failed()

        # WHEN: First run
        first = await orchestrator.run("v0.1", manual())

        # THEN: Blocked on the story with the failure recorded
        assert first.status == "blocked"
        state = stores.run_state.get()
        assert state.status == RunStatus.BLOCKED
        assert state.current_story == "v0.1:1.1.1"
        assert state.last_error == "Agent exited with code 1"
        assert state.failure_count == 1
        assert stores.checkpoints.has("v0.1:1.1.1", CheckpointStage.CLAUDE_STARTED)

        # WHEN: Two more runs resume the same story and fail the same way
        second = await orchestrator.run("v0.1", manual())
        third = await orchestrator.run("v0.1", manual())

        # THEN: Third identical failure needs a human
        assert second.status == "blocked"
        assert third.status == "waiting_gate"
        state = stores.run_state.get()
        assert state.status == RunStatus.WAITING_GATE
        assert state.failure_count == 3
        assert state.attempts == 3

        # AND: Previous failure is in the retry prompt
        prompt = runner.run.await_args.args[0]
        assert "Agent exited with code 1" in prompt

    @pytest.mark.asyncio
    async def test_agent_timeout_recorded(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, seeded_version
    ) -> None:
        runner.run.side_effect = AgentTimeoutError("Agent timed out after 5s", timeout=5)

        result = await orchestrator.run("v0.1", manual())

        assert result.status == "blocked"
        assert stores.run_state.get().last_error == "Agent timed out after 5s"
        metric = stores.metrics.list()[0]
        assert not metric.success
        assert metric.duration_seconds == 5.0

    @pytest.mark.asyncio
    async def test_runner_crash_recorded_as_failure(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, seeded_version
    ) -> None:
        # GIVEN: Runner fails with an error that is not an UpstreamError
        runner.run.side_effect = ValueError("Separator is not found, and chunk exceed the limit")

        # WHEN: Running
        result = await orchestrator.run("v0.1", manual())

        # THEN: Run is blocked with the failure counted, not left running
        assert result.status == "blocked"
        state = stores.run_state.get()
        assert state.status == RunStatus.BLOCKED
        assert state.current_story == "v0.1:1.1.1"
        assert state.failure_count == 1
        assert state.last_error == (
            "Agent run failed: Separator is not found, and chunk exceed the limit"
        )
        assert not stores.metrics.list()[0].success

    @pytest.mark.asyncio
    async def test_nothing_eligible_is_complete(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, make_story
    ) -> None:
        make_story(1, 1, 1, passes=True)

        result = await orchestrator.run("v0.1", manual())

        assert result.status == "complete"
        runner.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_version(self, orchestrator: ExecutionOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.run("v9.9", manual())


# =============================================================================
# Gates
# =============================================================================


class TestGates:
    @pytest.mark.asyncio
    async def test_vague_story_waits_for_clarification(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, make_story
    ) -> None:
        # GIVEN: Story with vague wording
        make_story(1, 1, 1, description="Handle errors properly")

        # WHEN: Running manually
        result = await orchestrator.run("v0.1", manual())

        # THEN: Waiting at the gate, agent not called
        assert result.status == "waiting_gate"
        assert "vague terms" in (result.message or "")
        runner.run.assert_not_awaited()
        assert stores.run_state.get().status == RunStatus.WAITING_GATE

        # WHEN: Running again without an answer
        again = await orchestrator.run("v0.1", manual())

        # THEN: Still waiting
        assert again.status == "waiting_gate"
        runner.run.assert_not_awaited()

        # WHEN: Answering the gate
        answered = await orchestrator.run(
            "v0.1", manual(), gate_response="Return 4xx with a message"
        )

        # THEN: Agent runs with the clarification and the story completes
        assert answered.status == "story_complete"
        assert "Return 4xx with a message" in runner.run.await_args.args[0]

    @pytest.mark.asyncio
    async def test_auto_mode_assumes_clarification(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, make_story
    ) -> None:
        make_story(1, 1, 1, description="Handle errors properly")

        result = await orchestrator.run("v0.1", manual(auto_mode=True))

        assert result.status == "complete"
        assert result.completed == ["v0.1:1.1.1"]
        assert AUTO_CLARIFICATION in runner.run.await_args.args[0]

    def test_validate_story_questions(self, make_story) -> None:
        story = make_story(1, 1, 1, description=None, acceptance=[], title="Improve settings")

        questions = validate_story(story)

        assert len(questions) == 3
        assert "improve" in questions[0]


# =============================================================================
# Auto mode and session control
# =============================================================================


class TestAutoMode:
    @pytest.mark.asyncio
    async def test_runs_until_nothing_eligible(
        self, orchestrator: ExecutionOrchestrator, runner: MagicMock, make_story
    ) -> None:
        make_story(1, 1, 1)
        make_story(1, 2, 1)

        result = await orchestrator.run("v0.1", manual(auto_mode=True))

        assert result.status == "complete"
        assert sorted(result.completed) == ["v0.1:1.1.1", "v0.1:1.2.1"]
        assert result.iterations == 3
        assert runner.run.await_count == 2

    @pytest.mark.asyncio
    async def test_passed_is_not_merged(
        self, orchestrator: ExecutionOrchestrator, seeded_version
    ) -> None:
        # 1.1.2 depends on 1.1.1, which only passes (not merged) in this session
        result = await orchestrator.run("v0.1", manual(auto_mode=True))

        assert result.completed == ["v0.1:1.1.1"]
        assert result.status == "complete"

    @pytest.mark.asyncio
    async def test_agent_blocked_signal_halts(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, make_story
    ) -> None:
        # GIVEN: Agent signals blocked
        make_story(1, 1, 1)
        make_story(1, 2, 1)

        async def agent(prompt: str, timeout: float, on_output=None) -> AgentResult:
            await handle_signal(stores, "1.1.1", "blocked", "Missing API key")
            return AgentResult(output="stopped", returncode=0, duration=1.0)

        runner.run.side_effect = agent

        # WHEN: Running in auto mode
        result = await orchestrator.run("v0.1", manual(auto_mode=True))

        # THEN: Session stops at the blocked story, failure counted once
        assert result.status == "blocked"
        assert result.iterations == 1
        state = stores.run_state.get()
        assert state.last_error == "Missing API key"
        assert state.failure_count == 1

    @pytest.mark.asyncio
    async def test_max_iterations(
        self, orchestrator: ExecutionOrchestrator, runner: MagicMock, make_story
    ) -> None:
        for epic in range(1, 4):
            make_story(1, epic, 1)

        result = await orchestrator.run("v0.1", manual(auto_mode=True, max_iterations=2))

        assert result.status == "max_iterations"
        assert len(result.completed) == 2

    @pytest.mark.asyncio
    async def test_single_story(
        self, orchestrator: ExecutionOrchestrator, runner: MagicMock, make_story
    ) -> None:
        make_story(1, 1, 1)
        make_story(1, 2, 1)

        result = await orchestrator.run(
            "v0.1", manual(auto_mode=True, single_story_id="1.2.1")
        )

        assert result.completed == ["v0.1:1.2.1"]
        assert runner.run.await_count == 1

    @pytest.mark.asyncio
    async def test_single_story_with_unmet_dependency(
        self, orchestrator: ExecutionOrchestrator, seeded_version
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.run("v0.1", manual(single_story_id="1.1.2"))

        assert exc_info.value.field == "singleStoryId"


class TestSessionControl:
    @pytest.mark.asyncio
    async def test_second_session_conflicts(
        self, orchestrator: ExecutionOrchestrator, runner: MagicMock, seeded_version
    ) -> None:
        # GIVEN: Agent call that waits until released
        started = asyncio.Event()
        release = asyncio.Event()

        async def agent(prompt: str, timeout: float, on_output=None) -> AgentResult:
            started.set()
            await release.wait()
            return completed()

        runner.run.side_effect = agent
        session = asyncio.create_task(orchestrator.run("v0.1", manual()))
        await asyncio.wait_for(started.wait(), timeout=1.0)

        # WHEN / THEN: Overlapping run and reset are refused
        assert orchestrator.is_running
        with pytest.raises(ConflictError):
            await orchestrator.run("v0.1", manual())
        with pytest.raises(ConflictError):
            await orchestrator.reset()

        release.set()
        result = await asyncio.wait_for(session, timeout=1.0)
        assert result.status == "story_complete"
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_stop_ends_auto_session_between_iterations(
        self, orchestrator: ExecutionOrchestrator, runner: MagicMock, make_story
    ) -> None:
        make_story(1, 1, 1)
        make_story(1, 2, 1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def agent(prompt: str, timeout: float, on_output=None) -> AgentResult:
            started.set()
            await release.wait()
            return completed()

        runner.run.side_effect = agent
        session = asyncio.create_task(orchestrator.run("v0.1", manual(auto_mode=True)))
        await asyncio.wait_for(started.wait(), timeout=1.0)

        # WHEN: Stop is requested mid-call
        await orchestrator.stop()
        release.set()
        result = await asyncio.wait_for(session, timeout=1.0)

        # THEN: The in-flight story finishes, no further story starts
        assert result.status == "stopped"
        assert len(result.completed) == 1
        assert runner.run.await_count == 1

    @pytest.mark.asyncio
    async def test_reset_keeps_last_completed(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, runner: MagicMock, seeded_version
    ) -> None:
        await orchestrator.run("v0.1", manual())
        runner.run.return_value = failed()
        stores.stories.mark_merged("v0.1:1.1.1")
        await orchestrator.run("v0.1", manual())

        state = await orchestrator.reset()

        assert state.status == RunStatus.IDLE
        assert state.last_error is None
        assert state.last_completed == "v0.1:1.1.1"


class TestStatus:
    def test_status_reports_next_and_progress(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, seeded_version
    ) -> None:
        stores.stories.mark_merged("v0.1:1.1.1")

        status = orchestrator.status("v0.1")

        assert status["running"] is False
        assert status["state"]["status"] == "idle"
        assert status["current_story"] is None
        assert status["next_story"]["story"]["id"] == "v0.1:1.1.2"
        assert status["totals"]["merged"] == 1
        assert status["totals"]["total"] == 3
        assert status["blocked"][0]["story_id"] == "v0.1:1.1.3"

    def test_status_includes_current_story_pipeline(
        self, orchestrator: ExecutionOrchestrator, stores: Stores, seeded_version
    ) -> None:
        stores.run_state.start("v0.1:1.1.1")
        stores.handoffs.create("v0.1:1.1.1", "orchestrator", "analyst")

        current = orchestrator.status("v0.1")["current_story"]

        assert current["id"] == "v0.1:1.1.1"
        assert current["status"] == "in_progress"
        assert current["pipeline"]["current_agent"] == "analyst"


class TestExecutionConfig:
    def test_from_settings_with_camel_case_overrides(self) -> None:
        settings = ExecutionSettings(base_branch="main", max_iterations=10)

        config = ExecutionConfig.from_settings(
            settings, {"maxIterations": 3, "autoMode": True}
        )

        assert config.base_branch == "main"
        assert config.max_iterations == 3
        assert config.auto_mode is True
