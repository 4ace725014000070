"""Story execution: agent runner, prompts, signals and the orchestrator loop."""

from ralph_dashboard.execution.agent import AgentResult, AgentRunner
from ralph_dashboard.execution.orchestrator import (
    EventSink,
    ExecutionConfig,
    ExecutionOrchestrator,
    RunResult,
)
from ralph_dashboard.execution.signals import SIGNAL_HANDLERS, handle_signal, signal_status

__all__ = [
    "SIGNAL_HANDLERS",
    "AgentResult",
    "AgentRunner",
    "EventSink",
    "ExecutionConfig",
    "ExecutionOrchestrator",
    "RunResult",
    "handle_signal",
    "signal_status",
]
