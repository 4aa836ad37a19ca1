"""
Error taxonomy for the MCP hub.

Every error surfaced by a dispatch call is a HubError subclass. None of
them is retried by the hub; retry policy belongs to the caller.
"""

from typing import Any, Dict, List, Optional, Tuple


class HubError(Exception):
    """Base class for errors reported to the caller of a tool."""

    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class NotFoundError(HubError):
    """A referenced tool, run or connection does not exist."""

    code = "not_found"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code

    @classmethod
    def unknown_tool(cls, name: str) -> "NotFoundError":
        return cls(f"Unknown tool: {name}", code="method_not_found")


class InvalidParamsError(HubError):
    """Request failed schema validation."""

    code = "invalid_params"

    def __init__(self, issues: List[Tuple[str, str]]):
        self.issues = list(issues)
        rendered = ", ".join(f"{path}: {reason}" for path, reason in self.issues)
        super().__init__(f"Invalid parameters: {rendered}")

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["issues"] = [
            {"path": path, "reason": reason} for path, reason in self.issues
        ]
        return out


class RunStateError(HubError):
    """A run that already reached a terminal status was asked to change."""

    code = "invalid_run_state"


class ConnectorUnavailableError(HubError):
    """The connector's circuit breaker is open."""

    code = "connector_unavailable"

    def __init__(self, connector_id: str):
        self.connector_id = connector_id
        super().__init__(
            f"Connector '{connector_id}' is temporarily unavailable "
            "(circuit breaker OPEN). Please try again later."
        )


class ResourceExhaustedError(HubError):
    """The connector's bulkhead is full."""

    code = "resource_exhausted"


class ToolTimeoutError(HubError):
    """The handler did not finish before the dispatch deadline."""

    code = "timeout"


class HandlerFailureError(HubError):
    """The handler raised, or returned an unsuccessful result."""

    code = "handler_failure"

    def __init__(self, message: str, data: Optional[List[Dict]] = None):
        super().__init__(message)
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.data:
            out["data"] = self.data
        return out

