"""
Error taxonomy for the aggregation server.

Per-call failures are converted into JSON-RPC error objects and never
escape the request that caused them. Only ConfigurationError is fatal to
the whole process.
"""
from __future__ import annotations

from enum import StrEnum
from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND

# Server-defined codes (JSON-RPC reserves -32000..-32099 for these)
CHILD_UNAVAILABLE = -32001
UPSTREAM_TIMEOUT = -32002


class ErrorCategory(StrEnum):
    """Error categories used for logging and health reporting."""
    CONFIGURATION = "configuration"
    STARTUP = "startup"
    UNAVAILABLE = "unavailable"
    INVALID_TARGET = "invalid_target"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    INTERNAL = "internal"


class AggregatorError(Exception):
    """Base class for all aggregator failures."""

    code: int = INTERNAL_ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}

    def to_jsonrpc(self) -> dict[str, Any]:
        """Render as a JSON-RPC error object."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


class ConfigurationError(AggregatorError):
    """Fatal startup problem: bad server list, duplicate names, port in use."""
    category = ErrorCategory.CONFIGURATION


class ChildStartupFailure(AggregatorError):
    """A child could not be spawned or did not finish its handshake."""
    category = ErrorCategory.STARTUP

    def __init__(self, server_id: str, reason: str, *, stderr_tail: list[str] | None = None) -> None:
        super().__init__(
            f"Server '{server_id}' failed to start: {reason}",
            data={"server": server_id},
        )
        self.server_id = server_id
        self.reason = reason
        self.stderr_tail = stderr_tail or []


class ChildUnavailable(AggregatorError):
    """The target child crashed, was stopped, or never started."""
    code = CHILD_UNAVAILABLE
    category = ErrorCategory.UNAVAILABLE

    def __init__(self, server_id: str, reason: str = "server is not available") -> None:
        super().__init__(f"Server '{server_id}': {reason}", data={"server": server_id})
        self.server_id = server_id


class ServerNotFound(ChildUnavailable):
    """Registry lookup miss: unknown id, or a session that is crashed/stopped."""

    def __init__(self, server_id: str, state: str | None = None) -> None:
        reason = f"server is {state}" if state else "no such server"
        super().__init__(server_id, reason)
        self.state = state


class WriteError(ChildUnavailable):
    """The child's stdin is closed or the process already exited."""

    def __init__(self, server_id: str, reason: str = "input stream is closed") -> None:
        super().__init__(server_id, reason)


class InvalidTarget(AggregatorError):
    """Malformed or unknown namespaced tool/prompt name or resource URI."""
    code = INVALID_PARAMS
    category = ErrorCategory.INVALID_TARGET

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"Invalid target '{target}': {reason}", data={"target": target})
        self.target = target


class UpstreamTimeout(AggregatorError):
    """A child did not answer within the per-call deadline."""
    code = UPSTREAM_TIMEOUT
    category = ErrorCategory.TIMEOUT

    def __init__(self, server_id: str, method: str, timeout: float) -> None:
        super().__init__(
            f"Server '{server_id}' did not answer '{method}' within {timeout:g}s",
            data={"server": server_id, "method": method, "timeout": timeout},
        )
        self.server_id = server_id
        self.method = method
        self.timeout = timeout


class MethodNotFound(AggregatorError):
    """The aggregator does not handle this JSON-RPC method."""
    code = METHOD_NOT_FOUND
    category = ErrorCategory.PROTOCOL

    def __init__(self, method: str) -> None:
        super().__init__(f"Method not found: {method}", data={"method": method})


class InvalidRequest(AggregatorError):
    """The inbound message is not a valid JSON-RPC request."""
    code = INVALID_REQUEST
    category = ErrorCategory.PROTOCOL


def error_object(exc: BaseException) -> dict[str, Any]:
    """Convert any exception into a JSON-RPC error object.

    Aggregator errors keep their own code; anything else is reported as
    an internal error without leaking a traceback.
    """
    if isinstance(exc, AggregatorError):
        return exc.to_jsonrpc()
    return {"code": INTERNAL_ERROR, "message": f"Internal error: {type(exc).__name__}: {exc}"}
