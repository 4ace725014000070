"""API route modules.

Each module exports ``routes``; API_ROUTES collects them in mount order.
Handlers reach the DashboardServer through ``request.app.state.server`` and
let RalphDashboardError propagate to the app's exception handler.
"""

from starlette.routing import BaseRoute

from ralph_dashboard.dashboard.routes import (
    events,
    handoffs,
    prd,
    run,
    signal,
    status,
    stories,
    tasks,
)

API_ROUTES: list[BaseRoute] = [
    *run.routes,
    *signal.routes,
    *handoffs.routes,
    *events.routes,
    *prd.routes,
    *stories.routes,
    *tasks.routes,
    *status.routes,
]

__all__ = ["API_ROUTES"]
