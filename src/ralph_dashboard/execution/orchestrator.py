"""Execution Orchestrator: drive stories through the agent.

One call to run() is one execution session:

1. Take the run lock (a second session gets ConflictError).
2. Time out stale handoffs.
3. Stay in waiting_gate unless a gate response is given.
4. Pick a story: the current one (resume), the requested one, or the
   best-scored eligible story.
5. Walk the checkpoint stages, skipping those already saved.
6. Invoke the agent and classify the outcome: complete, blocked or failure.
7. In auto mode, repeat until nothing is eligible, a gate is reached,
   stop() is called or max_iterations is hit.

Run state changes go through RunStateTracker; checkpoints make a crashed
session resumable from the last completed stage.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ralph_dashboard.core.config import ExecutionSettings, SelectionConfig, get_config
from ralph_dashboard.core.exceptions import (
    ConflictError,
    NotFoundError,
    RalphDashboardError,
    UpstreamError,
    ValidationError,
)
from ralph_dashboard.core.models import RunState, Story, derive_story_status
from ralph_dashboard.core.types import CheckpointStage, RunStatus
from ralph_dashboard.db import ALL_VERSIONS, Stores
from ralph_dashboard.execution.agent import AgentResult, AgentRunner
from ralph_dashboard.execution.prompts import COMPLETE_MARKER, build_story_prompt
from ralph_dashboard.prd.dependencies import unmet_dependencies
from ralph_dashboard.prd.progress import blocked_stories, total_stats, unmerged_passed
from ralph_dashboard.prd.selection import score_stories

logger = logging.getLogger(__name__)

DEFAULT_SIGNAL_URL = "http://127.0.0.1:9600/api/signal"

# Terms that make acceptance criteria hard to verify
VAGUE_TERMS = ("properly", "correctly", "appropriate", "handle", "improve", "better", "settings")

AUTO_CLARIFICATION = "Auto mode: make reasonable assumptions based on codebase patterns."

# Scored candidates returned by status()
STATUS_CANDIDATES = 10

OutcomeStatus = Literal[
    "story_complete", "complete", "blocked", "waiting_gate", "stopped", "max_iterations"
]


class EventSink(Protocol):
    """Receiver of orchestrator events (the SSE broadcaster)."""

    async def broadcast_event(self, event_type: str, data: dict[str, Any]) -> int: ...

    async def broadcast_output(self, line: str, provider: str | None = None) -> int: ...


class ExecutionConfig(BaseModel):
    """Per-run settings. Accepts camelCase keys from the API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    base_branch: str = "dev"
    max_iterations: int = Field(default=100, ge=1)
    claude_timeout: int = Field(default=900, ge=1)
    auto_mode: bool = False
    single_story_id: str | None = None

    @classmethod
    def from_settings(
        cls, settings: ExecutionSettings, overrides: dict[str, Any] | None = None
    ) -> ExecutionConfig:
        """Build from configured defaults, applying non-None overrides."""
        base = cls(
            base_branch=settings.base_branch,
            max_iterations=settings.max_iterations,
            claude_timeout=settings.claude_timeout,
            auto_mode=settings.auto_mode,
        )
        if not overrides:
            return base
        update = cls.model_validate(overrides).model_dump(exclude_unset=True)
        update = {k: v for k, v in update.items() if v is not None}
        return base.model_copy(update=update)


class RunResult(BaseModel):
    """Outcome of run()."""

    status: OutcomeStatus
    story_id: str | None = None
    message: str | None = None
    iterations: int = 0
    completed: list[str] = Field(default_factory=list)
    state: RunState | None = None


class _Outcome(BaseModel):
    status: OutcomeStatus
    story_id: str | None = None
    message: str | None = None
    retry: bool = False


def validate_story(story: Story) -> list[str]:
    """Questions to put to a human before the story can be implemented."""
    text = " ".join([story.title, story.description or "", *story.acceptance]).lower()
    questions: list[str] = []
    found = [term for term in VAGUE_TERMS if term in text]
    if found:
        questions.append(
            f"The story contains vague terms: {', '.join(found)}. What exactly is expected?"
        )
    if not story.acceptance:
        questions.append(
            "No acceptance criteria defined. What should be verified when the story is complete?"
        )
    if not story.description and not story.intent:
        questions.append("No description or intent provided. What are the context and goals?")
    return questions


def branch_name(story: Story) -> str:
    """Working branch for a story, e.g. ``ralph/1.2.3``."""
    return f"ralph/{story.number}"


class ExecutionOrchestrator:
    """Select stories and drive the agent through them.

    Args:
        stores: Database stores.
        runner: Agent runner.
        events: Event sink for run_state/story_update/metrics events.
        settings: Execution defaults (execution section of the config).
        selection: Scoring weights.
        signal_url: Signal endpoint URL given to the agent.

    """

    def __init__(
        self,
        stores: Stores,
        runner: AgentRunner,
        events: EventSink | None = None,
        settings: ExecutionSettings | None = None,
        selection: SelectionConfig | None = None,
        signal_url: str = DEFAULT_SIGNAL_URL,
    ) -> None:
        config = get_config()
        self.stores = stores
        self.runner = runner
        self.events = events
        self.settings = settings or config.execution
        self.selection = selection or config.selection
        self.signal_url = signal_url
        self._lock = asyncio.Lock()
        self._stop_requested = False

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # =========================================================================
    # Session control
    # =========================================================================

    async def run(
        self,
        version: str,
        config: ExecutionConfig | None = None,
        gate_response: str | None = None,
    ) -> RunResult:
        """Run one execution session.

        Args:
            version: Version whose stories are eligible.
            config: Run settings (configured defaults when None).
            gate_response: Human answer for a waiting_gate story.

        Raises:
            ConflictError: If a session is already running.
            NotFoundError: If the version or requested story is unknown.
            ValidationError: If the requested story cannot be started.

        """
        if self._lock.locked():
            raise ConflictError("Execution already in progress")
        config = config or ExecutionConfig.from_settings(self.settings)

        async with self._lock:
            self._stop_requested = False
            if self.stores.prd.get_version(version) is None:
                raise NotFoundError(f"Version {version} not found")

            self.stores.handoffs.timeout_stale(self.settings.stale_handoff_minutes)

            state = self.stores.run_state.get()
            if state.status == RunStatus.WAITING_GATE and not gate_response:
                logger.info("Waiting for gate response on %s", state.current_story)
                return RunResult(
                    status="waiting_gate",
                    story_id=state.current_story,
                    message=state.last_error,
                    state=state,
                )

            completed: list[str] = []
            iterations = 0
            outcome: _Outcome | None = None
            clarification = gate_response
            while iterations < config.max_iterations:
                if self._stop_requested:
                    outcome = _Outcome(status="stopped")
                    break
                iterations += 1
                outcome = await self._iterate(version, config, clarification)
                clarification = None
                if outcome.status == "story_complete" and outcome.story_id:
                    completed.append(outcome.story_id)
                if not config.auto_mode:
                    break
                if config.single_story_id and outcome.status == "story_complete":
                    break
                if outcome.status in ("complete", "waiting_gate", "stopped"):
                    break
                if outcome.status == "blocked" and not outcome.retry:
                    break
            else:
                outcome = _Outcome(
                    status="max_iterations", message=f"Reached {config.max_iterations} iterations"
                )

            if outcome is None:
                raise RalphDashboardError("Run ended without an outcome")
            logger.info("Run finished: %s after %d iteration(s)", outcome.status, iterations)
            return RunResult(
                status=outcome.status,
                story_id=outcome.story_id,
                message=outcome.message,
                iterations=iterations,
                completed=completed,
                state=self.stores.run_state.get(),
            )

    async def stop(self) -> RunState:
        """Go idle and ask a running session to stop between iterations.

        An in-flight agent call is not interrupted.
        """
        self._stop_requested = True
        state = self.stores.run_state.stop()
        await self._emit_state(state)
        return state

    async def reset(self) -> RunState:
        """Reset run state and time out stale handoffs."""
        if self._lock.locked():
            raise ConflictError("Cannot reset while execution is in progress")
        self.stores.handoffs.timeout_stale(self.settings.stale_handoff_minutes)
        state = self.stores.run_state.reset_state()
        await self._emit_state(state)
        return state

    def status(self, version: str) -> dict[str, Any]:
        """Run state, current story, next candidate and progress for a version."""
        prd = self.stores.prd.get_prd(version)
        state = self.stores.run_state.get()
        all_stories = self.stores.stories.list()
        scores = score_stories(
            all_stories,
            version=None if version == ALL_VERSIONS else version,
            last_completed=state.last_completed,
            recent=self.stores.stories.recently_passed(self.selection.recent_window),
            config=self.selection,
        )
        by_id = {s.id: s for s in prd.stories}

        current: dict[str, Any] | None = None
        if state.current_story:
            story = self.stores.stories.get(state.current_story)
            if story is not None:
                current = {
                    **story.model_dump(mode="json"),
                    "status": derive_story_status(story, state.current_story).value,
                    "checkpoints": [
                        c.model_dump(mode="json")
                        for c in self.stores.checkpoints.list(story.id)
                    ],
                    "pipeline": self.stores.handoffs.current_state(story.id),
                }

        next_story = None
        if scores:
            next_story = {
                "story": by_id[scores[0].story_id].model_dump(mode="json"),
                "score": scores[0].model_dump(),
            }
        return {
            "version": version,
            "running": self.is_running,
            "state": state.model_dump(mode="json"),
            "current_story": current,
            "next_story": next_story,
            "candidates": [s.model_dump() for s in scores[:STATUS_CANDIDATES]],
            "totals": total_stats(prd, self.stores.metrics.summary()).model_dump(),
            "blocked": [b.model_dump() for b in blocked_stories(prd)],
            "unmerged_passed": [s.id for s in unmerged_passed(prd)],
        }

    # =========================================================================
    # One iteration
    # =========================================================================

    async def _iterate(
        self, version: str, config: ExecutionConfig, clarification: str | None
    ) -> _Outcome:
        state = self.stores.run_state.get()
        story = self._resume_story(state)

        if story is None:
            story = self._pick_story(version, config, state)
            if story is None:
                state = self.stores.run_state.set_status(RunStatus.IDLE)
                await self._emit_state(state)
                return _Outcome(status="complete", message="No eligible stories")
            branch = story.working_branch or branch_name(story)
            state = self.stores.run_state.start(story.id, branch)
            attempt = state.attempts
        else:
            if story.passes:
                return await self._finish(story)
            if state.status == RunStatus.WAITING_GATE:
                self.stores.run_state.clear_failure()
            attempt = self.stores.run_state.increment_attempt()
            state = self.stores.run_state.set_status(RunStatus.RUNNING, story.id)
        await self._emit_state(state)
        await self._emit_story(story)

        gate = self._run_stages(story, config, clarification, attempt)
        if gate is not None:
            state = self.stores.run_state.set_status(RunStatus.WAITING_GATE, story.id)
            await self._emit_state(state)
            return _Outcome(status="waiting_gate", story_id=story.id, message=gate)

        if not self.stores.checkpoints.has(story.id, CheckpointStage.CLAUDE_COMPLETE):
            result, error = await self._invoke_agent(story, config, attempt, state.last_error)
        else:
            result, error = None, None

        story = self.stores.stories.require(story.id)
        if self._is_complete(story, result):
            return await self._finish(story)

        if self._stop_requested:
            return _Outcome(status="stopped", story_id=story.id)
        return await self._fail(story, result, error)

    def _resume_story(self, state: RunState) -> Story | None:
        if state.current_story is None:
            return None
        story = self.stores.stories.get(state.current_story)
        if story is None:
            logger.warning("Current story %s no longer exists, dropping it", state.current_story)
            self.stores.run_state.stop()
            return None
        return story

    def _pick_story(self, version: str, config: ExecutionConfig, state: RunState) -> Story | None:
        all_stories = self.stores.stories.list()
        if config.single_story_id:
            story = self.stores.stories.resolve(config.single_story_id, version)
            if story.is_finished:
                raise ValidationError(
                    f"Story {story.id} is already {derive_story_status(story).value}",
                    field="singleStoryId",
                )
            unmet = unmet_dependencies(story, all_stories)
            if unmet:
                raise ValidationError(
                    f"Story {story.id} has unmet dependencies: {', '.join(unmet)}",
                    field="singleStoryId",
                )
            return story

        scores = score_stories(
            all_stories,
            version=version,
            last_completed=state.last_completed,
            recent=self.stores.stories.recently_passed(self.selection.recent_window),
            config=self.selection,
        )
        if not scores:
            return None
        logger.info("Selected story %s (score %.2f)", scores[0].story_id, scores[0].score)
        return self.stores.stories.require(scores[0].story_id)

    def _run_stages(
        self, story: Story, config: ExecutionConfig, clarification: str | None, attempt: int
    ) -> str | None:
        """Save the pre-agent checkpoints. Returns a gate message to stop at."""
        checkpoints = self.stores.checkpoints
        done = checkpoints.completed_stages(story.id)

        if CheckpointStage.EXTERNAL_DEPS_COMPLETE not in done:
            checkpoints.save(
                story.id,
                CheckpointStage.EXTERNAL_DEPS_COMPLETE,
                {"depends_on": story.depends_on},
                attempt,
            )

        if CheckpointStage.VALIDATION_COMPLETE not in done or clarification:
            questions = validate_story(story)
            if questions and not clarification and not config.auto_mode:
                message = "Clarification needed: " + " ".join(questions)
                self.stores.run_state.record_failure(message)
                return message
            data: dict[str, Any] = {"questions": questions}
            if clarification:
                data["clarification"] = clarification
            elif questions:
                data["clarification"] = AUTO_CLARIFICATION
            checkpoints.save(story.id, CheckpointStage.VALIDATION_COMPLETE, data, attempt)

        if CheckpointStage.BRANCH_CREATED not in done:
            branch = story.working_branch or branch_name(story)
            self.stores.stories.set_working_branch(story.id, branch)
            checkpoints.save(
                story.id,
                CheckpointStage.BRANCH_CREATED,
                {"branch": branch, "base": config.base_branch},
                attempt,
            )

        checkpoints.save(story.id, CheckpointStage.CLAUDE_STARTED, {"attempt": attempt}, attempt)
        return None

    async def _invoke_agent(
        self,
        story: Story,
        config: ExecutionConfig,
        attempt: int,
        previous_failure: str | None,
    ) -> tuple[AgentResult | None, UpstreamError | None]:
        validation = self.stores.checkpoints.get(story.id, CheckpointStage.VALIDATION_COMPLETE)
        prompt = build_story_prompt(
            story,
            branch=story.working_branch or branch_name(story),
            base_branch=config.base_branch,
            attempt=attempt,
            signal_url=self.signal_url,
            clarification=validation.data.get("clarification") if validation else None,
            previous_failure=previous_failure,
        )
        result: AgentResult | None = None
        error: UpstreamError | None = None
        try:
            result = await self.runner.run(
                prompt, config.claude_timeout, on_output=self._emit_output
            )
        except UpstreamError as e:
            error = e
        except Exception as e:
            # Counts as a failed attempt so the run never stays in running
            logger.exception("Agent run for %s crashed", story.id)
            error = UpstreamError(f"Agent run failed: {e}")

        completed = self._is_complete(self.stores.stories.require(story.id), result)
        duration = result.duration if result is not None else float(config.claude_timeout)
        metric = self.stores.metrics.record(
            story.id,
            attempt=attempt,
            duration_seconds=duration,
            success=completed,
            error=str(error) if error is not None else None,
        )
        await self._emit("metrics", metric.model_dump(mode="json"))
        return result, error

    def _is_complete(self, story: Story, result: AgentResult | None) -> bool:
        if story.passes:
            return True
        if self.stores.checkpoints.has(story.id, CheckpointStage.CLAUDE_COMPLETE):
            return True
        return result is not None and COMPLETE_MARKER in result.output

    async def _finish(self, story: Story) -> _Outcome:
        checkpoint = self.stores.checkpoints.get(story.id, CheckpointStage.CLAUDE_COMPLETE)
        pr_url = story.pr_url or (checkpoint.data.get("prUrl") if checkpoint else None)
        if not story.passes:
            self.stores.stories.mark_passed(story.id)
        if pr_url:
            self.stores.checkpoints.save(story.id, CheckpointStage.PR_CREATED, {"prUrl": pr_url})
        state = self.stores.run_state.complete_story(story.id, pr_url)
        self.stores.handoffs.close_for_story(story.id)
        await self._emit_story(self.stores.stories.require(story.id))
        await self._emit_state(state)
        logger.info("Story %s complete%s", story.id, f" ({pr_url})" if pr_url else "")
        return _Outcome(status="story_complete", story_id=story.id, message=pr_url)

    async def _fail(
        self, story: Story, result: AgentResult | None, error: UpstreamError | None
    ) -> _Outcome:
        state = self.stores.run_state.get()
        if state.status == RunStatus.BLOCKED and state.current_story == story.id:
            # Agent signalled blocked; the signal already recorded the failure
            count = state.failure_count
            retry = False
        else:
            if error is not None:
                message = str(error)
            elif result is not None and not result.success:
                message = f"Agent exited with code {result.returncode}"
            else:
                message = "Agent finished without a completion signal"
            count = self.stores.run_state.record_failure(message)
            retry = True

        if count >= self.settings.max_repeated_failures:
            state = self.stores.run_state.set_status(RunStatus.WAITING_GATE, story.id)
            await self._emit_state(state)
            return _Outcome(
                status="waiting_gate",
                story_id=story.id,
                message=f"Failed {count} times with: {state.last_error}",
            )

        state = self.stores.run_state.set_status(RunStatus.BLOCKED, story.id)
        await self._emit_state(state)
        return _Outcome(status="blocked", story_id=story.id, message=state.last_error, retry=retry)

    # =========================================================================
    # Events
    # =========================================================================

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events is not None:
            await self.events.broadcast_event(event_type, data)

    async def _emit_state(self, state: RunState) -> None:
        await self._emit("run_state", state.model_dump(mode="json"))

    async def _emit_story(self, story: Story) -> None:
        state = self.stores.run_state.get()
        await self._emit(
            "story_update",
            {
                **story.model_dump(mode="json"),
                "status": derive_story_status(story, state.current_story).value,
            },
        )

    async def _emit_output(self, line: str) -> None:
        if self.events is not None:
            await self.events.broadcast_output(line, provider="claude")
