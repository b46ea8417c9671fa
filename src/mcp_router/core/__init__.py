"""
Core building blocks shared by the aggregation gateway.

- errors: error taxonomy with JSON-RPC codes
- jsonrpc: message helpers and MCP method classification
- observability: structured logging
"""
from .errors import (
    AggregatorError,
    ChildStartupFailure,
    ChildUnavailable,
    ConfigurationError,
    ErrorCategory,
    InvalidTarget,
    ServerNotFound,
    UpstreamTimeout,
    WriteError,
    error_object,
)
from .jsonrpc import MethodCategory, classify
from .observability import configure_logging, get_logger

__all__ = [
    # Errors
    "AggregatorError",
    "ChildStartupFailure",
    "ChildUnavailable",
    "ConfigurationError",
    "ErrorCategory",
    "InvalidTarget",
    "ServerNotFound",
    "UpstreamTimeout",
    "WriteError",
    "error_object",
    # JSON-RPC
    "MethodCategory",
    "classify",
    # Logging
    "configure_logging",
    "get_logger",
]
