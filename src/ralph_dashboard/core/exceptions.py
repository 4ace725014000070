"""Exception hierarchy for ralph-dashboard.

Every domain error derives from RalphDashboardError and carries the HTTP
status code the API layer responds with:

- ValidationError (400): missing/invalid field, bad enum value, illegal transition
- NotFoundError (404): unknown version, story, task or handoff
- ConflictError (409): duplicate pending handoff, overlapping run
- UpstreamError (500): external agent call failure or timeout
"""

from __future__ import annotations

from typing import Any


class RalphDashboardError(Exception):
    """Base exception for all ralph-dashboard errors.

    Attributes:
        status_code: HTTP status code used when the error reaches the API.

    """

    status_code: int = 500

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to the JSON body returned by the API."""
        return {"error": str(self)}


class ConfigError(RalphDashboardError):
    """Configuration file missing, unreadable or invalid."""

    pass


class DashboardError(RalphDashboardError):
    """Dashboard server could not start (port busy, bad project path)."""

    pass


class ValidationError(RalphDashboardError):
    """Request or operation failed validation.

    Attributes:
        field: Name of the offending field, if known.

    """

    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize ValidationError.

        Args:
            message: Human-readable error message.
            field: Name of the offending field or value.

        """
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Serialize error including the offending field."""
        body = super().to_dict()
        if self.field is not None:
            body["field"] = self.field
        return body


class HandoffTransitionError(ValidationError):
    """Handoff edge is not in the agent transition table.

    Attributes:
        from_agent: Sending agent.
        to_agent: Receiving agent.

    """

    def __init__(self, message: str, from_agent: str, to_agent: str) -> None:
        """Initialize HandoffTransitionError.

        Args:
            message: Human-readable error message.
            from_agent: Sending agent name.
            to_agent: Receiving agent name.

        """
        super().__init__(message, field="toAgent")
        self.from_agent = from_agent
        self.to_agent = to_agent


class NotFoundError(RalphDashboardError):
    """Referenced record does not exist."""

    status_code = 404


class ConflictError(RalphDashboardError):
    """Operation conflicts with an existing record.

    Attributes:
        existing: Serialized conflicting record, returned to the caller so it
            can resolve the conflict first.

    """

    status_code = 409

    def __init__(self, message: str, existing: dict[str, Any] | None = None) -> None:
        """Initialize ConflictError.

        Args:
            message: Human-readable error message.
            existing: Conflicting record (JSON-serializable).

        """
        super().__init__(message)
        self.existing = existing

    def to_dict(self) -> dict[str, Any]:
        """Serialize error including the conflicting record."""
        body = super().to_dict()
        if self.existing is not None:
            body["existing"] = self.existing
        return body


class UpstreamError(RalphDashboardError):
    """External agent (LLM CLI) call failed.

    Attributes:
        raw: Raw stdout/stderr excerpt for debugging, if available.

    """

    status_code = 500

    def __init__(self, message: str, raw: str | None = None) -> None:
        """Initialize UpstreamError.

        Args:
            message: Human-readable error message.
            raw: Raw process output.

        """
        super().__init__(message)
        self.raw = raw

    def to_dict(self) -> dict[str, Any]:
        """Serialize error including raw output."""
        body = super().to_dict()
        if self.raw:
            body["raw"] = self.raw
        return body


class AgentTimeoutError(UpstreamError):
    """External agent exceeded its timeout and was killed.

    Attributes:
        timeout: Timeout in seconds that was exceeded.

    """

    def __init__(self, message: str, timeout: float, raw: str | None = None) -> None:
        """Initialize AgentTimeoutError.

        Args:
            message: Human-readable error message.
            timeout: Timeout in seconds.
            raw: Partial output captured before the kill.

        """
        super().__init__(message, raw=raw)
        self.timeout = timeout
