"""Core module for ralph-dashboard configuration, types and errors.

This module provides:
- Configuration models and singleton access via get_config()
- Custom exception hierarchy with RalphDashboardError as base
- Shared enums and persisted record models
"""

from ralph_dashboard.core.config import (
    CONFIG_FILENAME,
    Config,
    DashboardConfig,
    ExecutionSettings,
    SelectionConfig,
    get_config,
    load_config,
)
from ralph_dashboard.core.exceptions import (
    AgentTimeoutError,
    ConfigError,
    ConflictError,
    DashboardError,
    HandoffTransitionError,
    NotFoundError,
    RalphDashboardError,
    UpstreamError,
    ValidationError,
)

__all__ = [
    # Config
    "CONFIG_FILENAME",
    "Config",
    "DashboardConfig",
    "ExecutionSettings",
    "SelectionConfig",
    "get_config",
    "load_config",
    # Exceptions
    "AgentTimeoutError",
    "ConfigError",
    "ConflictError",
    "DashboardError",
    "HandoffTransitionError",
    "NotFoundError",
    "RalphDashboardError",
    "UpstreamError",
    "ValidationError",
]
