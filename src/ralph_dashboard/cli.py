"""Command-line interface for ralph-dashboard.

Commands:
    serve   Start the dashboard web server
    status  Show run state and progress of a version
    run     Run one execution session from the terminal
    reset   Reset run state
    import  Load a PRD JSON document into the store
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer
from rich.table import Table

from ralph_dashboard.cli_utils import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_SUCCESS,
    _error,
    _setup_logging,
    _success,
    _validate_project_path,
    _warning,
    console,
)
from ralph_dashboard.core.config import Config, load_config
from ralph_dashboard.core.exceptions import ConfigError, DashboardError, RalphDashboardError
from ralph_dashboard.dashboard.schemas import DEFAULT_VERSION
from ralph_dashboard.db import Stores, open_project_database
from ralph_dashboard.execution import AgentRunner, ExecutionConfig, ExecutionOrchestrator

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="ralph-dashboard",
    help="Orchestration dashboard for the Ralph autonomous development loop",
    no_args_is_help=True,
)

PROJECT_OPTION = typer.Option(".", "--project", help="Path to project directory")
VERSION_OPTION = typer.Option(DEFAULT_VERSION, "--version", help="PRD version")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable verbose logging")


def _load(project: str) -> tuple[Path, Config]:
    project_path = _validate_project_path(project)
    try:
        config = load_config(project_path)
    except ConfigError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None
    return project_path, config


def _open_stores(project_path: Path, config: Config) -> Stores:
    return Stores(open_project_database(project_path, config.dashboard.db_path))


class _ConsoleEvents:
    """Print agent output and state changes while `run` is in the terminal."""

    async def broadcast_event(self, event_type: str, data: dict[str, Any]) -> int:
        if event_type == "run_state":
            console.print(
                f"[dim]state: {data.get('status')} ({data.get('current_story') or '-'})[/dim]"
            )
        return 0

    async def broadcast_output(self, line: str, provider: str | None = None) -> int:
        console.print(line, markup=False, highlight=False)
        return 0


# =============================================================================
# serve
# =============================================================================


@app.command("serve")
def serve_command(
    host: str | None = typer.Option(
        None,
        "--host",
        # NOTE: No -h short form - conflicts with --help
        help="Address to bind server to (default: dashboard.host)",
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port to bind server to (default: dashboard.port)"
    ),
    project: str = PROJECT_OPTION,
    verbose: bool = VERBOSE_OPTION,
    no_auto_port: bool = typer.Option(
        False, "--no-auto-port", help="Fail if port is busy instead of auto-discovering"
    ),
) -> None:
    """Start the dashboard web server."""
    from ralph_dashboard.dashboard import find_available_port, start_server

    _setup_logging(verbose=verbose)
    project_path, config = _load(project)
    host = host or config.dashboard.host
    port = port or config.dashboard.port

    # Port auto-discovery (unless --no-auto-port)
    actual_port = port
    if not no_auto_port:
        try:
            actual_port = find_available_port(port, host)
            if actual_port != port:
                console.print(f"[yellow]Port {port} unavailable, using port {actual_port}[/yellow]")
        except DashboardError as e:
            _error(str(e))
            raise typer.Exit(code=EXIT_ERROR) from None

    console.print("[green]Dashboard server starting...[/green]")
    console.print(f"  URL: http://{host}:{actual_port}/api/run")
    console.print(f"  Project: {project_path}")
    console.print("  Press Ctrl+C to stop")

    try:
        start_server(
            project_path, host=host, port=actual_port, log_level="debug" if verbose else "info"
        )
    except OSError as e:
        import errno

        if e.errno == errno.EADDRINUSE:
            _error(f"Port {actual_port} is already in use")
            raise typer.Exit(code=EXIT_ERROR) from None
        raise

    console.print("\n[yellow]Server stopped.[/yellow]")
    raise typer.Exit(code=EXIT_SUCCESS)


# =============================================================================
# status
# =============================================================================


@app.command("status")
def status_command(
    version: str = VERSION_OPTION,
    project: str = PROJECT_OPTION,
) -> None:
    """Show run state, next story and progress of a version."""
    project_path, config = _load(project)
    stores = _open_stores(project_path, config)
    orchestrator = ExecutionOrchestrator(stores, AgentRunner(cwd=project_path))
    try:
        status = orchestrator.status(version)
    except RalphDashboardError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    finally:
        stores.db.close()

    state = status["state"]
    table = Table(title=f"Ralph {version}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", state["status"])
    table.add_row("Current story", state["current_story"] or "-")
    table.add_row("Attempts", str(state["attempts"]))
    table.add_row("Last completed", state["last_completed"] or "-")
    if state["last_error"]:
        table.add_row("Last error", f"{state['last_error']} (x{state['failure_count']})")
    next_story = status["next_story"]
    if next_story:
        score = next_story["score"]
        table.add_row("Next story", f"{next_story['story']['id']} (score {score['score']:.2f})")
    totals = status["totals"]
    table.add_row(
        "Progress",
        f"{totals['merged']}/{totals['total']} merged, {totals['passed']} passed, "
        f"{totals['skipped']} skipped ({totals['percentage']}%)",
    )
    console.print(table)

    for blocked in status["blocked"]:
        _warning(f"{blocked['story_id']} is blocked by {blocked['blocked_by']}")


# =============================================================================
# run
# =============================================================================


@app.command("run")
def run_command(
    version: str = VERSION_OPTION,
    auto: bool = typer.Option(False, "--auto", help="Keep iterating until done or gated"),
    story: str | None = typer.Option(None, "--story", "-s", help="Work only this story"),
    gate_response: str | None = typer.Option(
        None, "--gate-response", "-g", help="Answer for a story waiting at a gate"
    ),
    timeout: int | None = typer.Option(
        None, "--timeout", "-t", help="Seconds per agent call (default: execution.claude_timeout)"
    ),
    max_iterations: int | None = typer.Option(
        None, "--max-iterations", help="Iteration cap in auto mode"
    ),
    base_branch: str | None = typer.Option(None, "--base-branch", help="Branch to cut from"),
    project: str = PROJECT_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run one execution session in the terminal."""
    _setup_logging(verbose=verbose)
    project_path, config = _load(project)
    stores = _open_stores(project_path, config)
    orchestrator = ExecutionOrchestrator(
        stores,
        AgentRunner(cwd=project_path),
        events=_ConsoleEvents(),
        signal_url=f"http://{config.dashboard.host}:{config.dashboard.port}/api/signal",
    )
    overrides = {
        "auto_mode": auto or None,
        "single_story_id": story,
        "claude_timeout": timeout,
        "max_iterations": max_iterations,
        "base_branch": base_branch,
    }
    run_config = ExecutionConfig.from_settings(
        config.execution, {k: v for k, v in overrides.items() if v is not None}
    )

    try:
        result = asyncio.run(orchestrator.run(version, run_config, gate_response=gate_response))
    except RalphDashboardError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    finally:
        stores.db.close()

    if result.completed:
        _success(f"Completed: {', '.join(result.completed)}")
    summary = f"{result.status} after {result.iterations} iteration(s)"
    if result.status in ("story_complete", "complete"):
        _success(summary)
    else:
        _warning(f"{summary}: {result.message}" if result.message else summary)
    if result.status == "waiting_gate":
        console.print("Answer with: ralph-dashboard run --gate-response \"...\"")


# =============================================================================
# reset / import
# =============================================================================


@app.command("reset")
def reset_command(project: str = PROJECT_OPTION) -> None:
    """Reset run state (last completed story is kept)."""
    project_path, config = _load(project)
    stores = _open_stores(project_path, config)
    try:
        timed_out = stores.handoffs.timeout_stale(config.execution.stale_handoff_minutes)
        stores.run_state.reset_state()
    finally:
        stores.db.close()
    if timed_out:
        _warning(f"Timed out {len(timed_out)} stale handoff(s)")
    _success("Run state reset")


@app.command("import")
def import_command(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="PRD JSON document"),
    version: str | None = typer.Option(
        None, "--version", help="Version to import into (default: from the document)"
    ),
    project: str = PROJECT_OPTION,
) -> None:
    """Load a PRD JSON document into the store. Existing stories are kept."""
    project_path, config = _load(project)
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        _error(f"Cannot read {file}: {e}")
        raise typer.Exit(code=EXIT_ERROR) from None
    if not isinstance(data, dict):
        _error(f"{file} must contain a JSON object")
        raise typer.Exit(code=EXIT_ERROR)

    stores = _open_stores(project_path, config)
    try:
        prd = stores.prd.import_prd(data, version)
    except RalphDashboardError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    finally:
        stores.db.close()
    _success(f"Imported {prd.version}: {len(prd.stories)} stories")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
