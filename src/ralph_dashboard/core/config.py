"""Configuration models and loading for ralph-dashboard.

Configuration is optional. When present it is read from
``ralph-dashboard.yaml`` in the project root:

    dashboard:
      port: 9600
      db_path: .ralph/dashboard.db
    execution:
      base_branch: dev
      claude_timeout: 900
      max_repeated_failures: 3
    selection:
      tag_weight: 2.0

Usage:
    from ralph_dashboard.core.config import get_config, load_config

    load_config(project_root)
    config = get_config()
    timeout = config.execution.claude_timeout

Environment overrides (applied after the file):
    RALPH_DB_PATH: dashboard.db_path
    RALPH_CLAUDE_COMMAND: execution.claude_command
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ralph_dashboard.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ralph-dashboard.yaml"
MAX_CONFIG_SIZE = 1_048_576  # 1 MiB

ENV_DB_PATH = "RALPH_DB_PATH"
ENV_CLAUDE_COMMAND = "RALPH_CLAUDE_COMMAND"


class DashboardConfig(BaseModel):
    """HTTP server and storage settings.

    Attributes:
        host: Address the server binds to.
        port: First port tried (auto-discovery increments by 2).
        db_path: SQLite database path, relative to the project root.
        heartbeat_interval: Seconds of SSE idle before a heartbeat frame.

    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str = "127.0.0.1"
    port: int = Field(default=9600, ge=1, le=65535)
    db_path: str = ".ralph/dashboard.db"
    heartbeat_interval: float = Field(default=30.0, gt=0)


class ExecutionSettings(BaseModel):
    """Defaults for the execution orchestrator.

    Request-level ``config`` values on POST /api/run override the first four.

    Attributes:
        base_branch: Branch new story branches are cut from.
        max_iterations: Upper bound of iterations in one auto-mode run.
        claude_timeout: Seconds before an agent call is killed.
        auto_mode: Keep iterating after a story completes or fails.
        stale_handoff_minutes: Pending handoffs older than this are timed out
            on start/continue/reset.
        max_repeated_failures: Identical consecutive failures that halt auto
            mode and require a gate response.
        claude_command: Agent CLI invocation (prompt is fed on stdin).
        prd_timeout: Seconds allowed for refine/generate/story-edit/align calls.

    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    base_branch: str = "dev"
    max_iterations: int = Field(default=100, ge=1)
    claude_timeout: int = Field(default=900, ge=1)
    auto_mode: bool = False
    stale_handoff_minutes: int = Field(default=30, ge=1)
    max_repeated_failures: int = Field(default=3, ge=1)
    claude_command: list[str] = Field(
        default_factory=lambda: ["claude", "--dangerously-skip-permissions", "--print"]
    )
    prd_timeout: int = Field(default=300, ge=1)


class SelectionConfig(BaseModel):
    """Weights for the next-story scoring function.

    Attributes:
        proximity_weight: Scaled by 1/(1+d), d = graph distance to last completed.
        tag_weight: Per tag shared with recently completed stories.
        blocker_weight: Per unfinished story that directly depends on the candidate.
        priority_weight: Scaled by the story priority, capped at 10.
        complexity_weight: Divided by the number of acceptance criteria.
        recent_window: How many recently passed stories feed tag overlap.

    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    proximity_weight: float = Field(default=10.0, ge=0)
    tag_weight: float = Field(default=2.0, ge=0)
    blocker_weight: float = Field(default=3.0, ge=0)
    priority_weight: float = Field(default=1.0, ge=0)
    complexity_weight: float = Field(default=0.5, ge=0)
    recent_window: int = Field(default=5, ge=1)


class Config(BaseModel):
    """Root configuration."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    project: str | None = None
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)


# Module-level singleton (None = not loaded yet)
_config: Config | None = None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Merge environment overrides into raw config data."""
    db_path = os.environ.get(ENV_DB_PATH)
    if db_path:
        data.setdefault("dashboard", {})["db_path"] = db_path
    command = os.environ.get(ENV_CLAUDE_COMMAND)
    if command:
        data.setdefault("execution", {})["claude_command"] = command.split()
    return data


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse a YAML config file.

    Raises:
        ConfigError: If the file is too large, unreadable or not a mapping.

    """
    try:
        if path.stat().st_size > MAX_CONFIG_SIZE:
            raise ConfigError(f"Config file too large: {path} (max {MAX_CONFIG_SIZE} bytes)")
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")
    return raw


def load_config(project_root: Path | str | None = None, path: Path | str | None = None) -> Config:
    """Load configuration and install it as the singleton.

    Args:
        project_root: Directory searched for ralph-dashboard.yaml.
        path: Explicit config file path (takes precedence).

    Returns:
        Loaded Config (defaults when no file exists).

    Raises:
        ConfigError: If the file exists but is invalid.

    """
    global _config

    config_path: Path | None = None
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
    elif project_root is not None:
        candidate = Path(project_root) / CONFIG_FILENAME
        if candidate.exists():
            config_path = candidate

    data: dict[str, Any] = {}
    if config_path is not None:
        data = _read_config_file(config_path)
        logger.debug("Loaded config from %s", config_path)

    data = _apply_env_overrides(data)

    try:
        _config = Config.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return _config


def get_config() -> Config:
    """Get the configuration singleton, loading defaults on first use."""
    global _config
    if _config is None:
        _config = Config.model_validate(_apply_env_overrides({}))
    return _config


def _reset_config() -> None:
    """Clear the configuration singleton (tests only)."""
    global _config
    _config = None
