"""Async task queue for long-running LLM operations."""

from ralph_dashboard.tasks.handlers import HANDLERS
from ralph_dashboard.tasks.queue import TaskQueue

__all__ = ["HANDLERS", "TaskQueue"]
