"""Shared CLI helpers: console, exit codes, logging setup and messages."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

console = Console()

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2


def _setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Install a RichHandler on the root logger.

    Args:
        verbose: DEBUG level.
        quiet: WARNING level (ignored when verbose).

    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _validate_project_path(project: str) -> Path:
    """Resolve --project and exit when it is not a directory."""
    path = Path(project).expanduser().resolve()
    if not path.is_dir():
        _error(f"Project directory not found: {path}")
        raise typer.Exit(code=EXIT_ERROR)
    return path


def _error(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")


def _warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {message}")


def _success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")
