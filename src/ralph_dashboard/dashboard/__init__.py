"""Dashboard module for ralph-dashboard.

This module provides the HTTP surface of the Ralph loop:
- JSON API for runs, signals, handoffs, the PRD and async tasks
- Real-time run_state/story_update/metrics events via SSE

Public API:
    DashboardServer: Main HTTP server class
    start_server: Convenience function to start dashboard
    SSEBroadcaster: Event fan-out to connected clients
"""

from ralph_dashboard.dashboard.server import DashboardServer, find_available_port, start_server
from ralph_dashboard.dashboard.sse import EventType, SSEBroadcaster, SSEMessage

__all__ = [
    "DashboardServer",
    "EventType",
    "SSEBroadcaster",
    "SSEMessage",
    "find_available_port",
    "start_server",
]
