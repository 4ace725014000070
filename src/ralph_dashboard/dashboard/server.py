"""Dashboard HTTP server for ralph-dashboard.

This module implements the main dashboard server using Starlette/Uvicorn:
- Provides the JSON API under /api
- Streams run_state/story_update/metrics/task_update events over SSE
- Owns the stores, orchestrator and task queue for one project

Public API:
    DashboardServer: Main server class
    start_server: Convenience function to start server
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import AsyncIterator
from pathlib import Path

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import BaseRoute

from ralph_dashboard.core.config import get_config
from ralph_dashboard.core.exceptions import DashboardError, RalphDashboardError
from ralph_dashboard.dashboard.routes import API_ROUTES
from ralph_dashboard.dashboard.sse import SSEBroadcaster
from ralph_dashboard.db import Database, Stores, open_project_database
from ralph_dashboard.execution import AgentRunner, ExecutionOrchestrator
from ralph_dashboard.prd.operations import PRDOperations
from ralph_dashboard.tasks import TaskQueue

logger = logging.getLogger(__name__)


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check if port is available for binding.

    Args:
        port: Port number to check.
        host: Host address to bind to.

    Returns:
        True if port can be bound, False if busy.

    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
    except OSError:
        return False


def find_available_port(
    start_port: int = 9600,
    host: str = "127.0.0.1",
    max_attempts: int = 10,
) -> int:
    """Find available port, incrementing by 2.

    Raises:
        DashboardError: If no available port found after max_attempts.

    """
    tried: list[int] = []
    for i in range(max_attempts):
        port = start_port + (i * 2)
        tried.append(port)
        if is_port_available(port, host):
            return port

    raise DashboardError(
        f"No available port. Tried: {tried[0]}-{tried[-1]}. "
        f"Free a port or use --port with different value."
    )


async def handle_domain_error(request: Request, exc: Exception) -> Response:
    """Map RalphDashboardError to ``{error, ...}`` with its status code."""
    if not isinstance(exc, RalphDashboardError):
        return await handle_unexpected_error(request, exc)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def handle_unexpected_error(request: Request, exc: Exception) -> Response:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": str(exc) or type(exc).__name__}, status_code=500)


class DashboardServer:
    """Main dashboard server for ralph-dashboard.

    Attributes:
        host: Server bind address.
        port: Server bind port.
        project_root: Project the agent works in.
        stores: Database stores.
        sse_broadcaster: SSE broadcaster instance.
        orchestrator: Execution orchestrator.
        prd_operations: Refine/generate/story-edit/align operations.
        task_queue: Async task queue.

    """

    def __init__(
        self,
        project_root: Path,
        host: str = "127.0.0.1",
        port: int = 9600,
        db: Database | None = None,
        runner: AgentRunner | None = None,
    ) -> None:
        """Initialize dashboard server.

        Args:
            project_root: Path to the project root.
            host: Address to bind server to.
            port: Port to bind server to.
            db: Database to use (opened from dashboard.db_path when None).
            runner: Agent runner (a CLI runner in project_root when None).

        """
        config = get_config()
        self.host = host
        self.port = port
        self.project_root = Path(project_root)

        self._owns_db = db is None
        if db is None:
            db = open_project_database(self.project_root, config.dashboard.db_path)
        self.db = db
        self.stores = Stores(db)

        self.runner = runner or AgentRunner(cwd=self.project_root)
        self.sse_broadcaster = SSEBroadcaster(
            heartbeat_interval=config.dashboard.heartbeat_interval
        )
        self.orchestrator = ExecutionOrchestrator(
            self.stores,
            self.runner,
            events=self.sse_broadcaster,
            signal_url=f"http://{host}:{port}/api/signal",
        )
        self.prd_operations = PRDOperations(self.stores, self.runner)
        self.task_queue = TaskQueue(self.stores, self.prd_operations, events=self.sse_broadcaster)
        self._app: Starlette | None = None

    def create_app(self) -> Starlette:
        """Create and configure Starlette application.

        Returns:
            Configured Starlette app instance.

        """
        middleware = [
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],  # Local dev only
                allow_methods=["*"],
                allow_headers=["*"],
            ),
        ]

        routes: list[BaseRoute] = list(API_ROUTES)

        app = Starlette(
            routes=routes,
            middleware=middleware,
            exception_handlers={
                RalphDashboardError: handle_domain_error,
                Exception: handle_unexpected_error,
            },
            lifespan=self._lifespan,
        )

        # Store server reference in app state
        app.state.server = self

        self._app = app
        return app

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        await self._on_startup()
        try:
            yield
        finally:
            await self._on_shutdown()

    async def _on_startup(self) -> None:
        """Fail tasks interrupted by the last shutdown and resume the queue."""
        recovered = self.stores.tasks.recover_interrupted()
        if recovered:
            logger.warning("Marked %d interrupted task(s) as failed", recovered)
        await self.task_queue.process_next()
        logger.info("Dashboard server starting at http://%s:%d", self.host, self.port)

    async def _on_shutdown(self) -> None:
        logger.info("Dashboard server shutting down...")
        await self.task_queue.shutdown()
        await self.sse_broadcaster.shutdown()
        if self._owns_db:
            self.db.close()

    async def run(self, log_level: str = "info") -> None:
        """Start the server and run until shutdown.

        Args:
            log_level: Uvicorn log level (debug, info, warning, error).

        """
        import uvicorn

        app = self.create_app()
        config = uvicorn.Config(app, host=self.host, port=self.port, log_level=log_level)
        server = uvicorn.Server(config)
        await server.serve()


def start_server(
    project_root: Path | str,
    host: str = "127.0.0.1",
    port: int = 9600,
    log_level: str = "info",
) -> None:
    """Start dashboard server.

    Args:
        project_root: Path to the project.
        host: Address to bind to.
        port: Port to bind to.
        log_level: Uvicorn log level.

    """
    server = DashboardServer(project_root=Path(project_root), host=host, port=port)
    asyncio.run(server.run(log_level=log_level))
