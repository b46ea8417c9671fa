"""
JSON-RPC 2.0 helpers and MCP method classification.

Messages travel as plain dicts so that child payloads can be relayed
without re-serialisation artefacts. Validation against the MCP SDK's
message models is used only to decide whether a line from a child is a
JSON-RPC message at all.
"""
from __future__ import annotations

from enum import StrEnum
from typing import Any

from mcp.types import JSONRPCMessage
from pydantic import ValidationError

JSONRPC_VERSION = "2.0"

RequestId = int | str


class MethodCategory(StrEnum):
    """Routing categories for inbound MCP methods.

    Each category has exactly one handling strategy in the router.
    """
    INITIALIZE = "initialize"
    PING = "ping"
    LIST = "list"  # answered from the merged catalog
    CALL_BY_NAME = "call_by_name"  # tools/call, prompts/get
    CALL_BY_URI = "call_by_uri"  # resources/read, subscribe, unsubscribe
    COMPLETE = "complete"  # routed by its ref
    FAN_OUT = "fan_out"  # sent to every ready child
    NOTIFICATION = "notification"
    UNKNOWN = "unknown"


METHOD_CATEGORIES: dict[str, MethodCategory] = {
    "initialize": MethodCategory.INITIALIZE,
    "ping": MethodCategory.PING,
    "tools/list": MethodCategory.LIST,
    "resources/list": MethodCategory.LIST,
    "resources/templates/list": MethodCategory.LIST,
    "prompts/list": MethodCategory.LIST,
    "tools/call": MethodCategory.CALL_BY_NAME,
    "prompts/get": MethodCategory.CALL_BY_NAME,
    "resources/read": MethodCategory.CALL_BY_URI,
    "resources/subscribe": MethodCategory.CALL_BY_URI,
    "resources/unsubscribe": MethodCategory.CALL_BY_URI,
    "completion/complete": MethodCategory.COMPLETE,
    "logging/setLevel": MethodCategory.FAN_OUT,
}


def classify(message: dict[str, Any]) -> MethodCategory:
    """Classify an inbound request or notification."""
    method = message.get("method")
    if not isinstance(method, str):
        return MethodCategory.UNKNOWN
    if "id" not in message:
        return MethodCategory.NOTIFICATION
    return METHOD_CATEGORIES.get(method, MethodCategory.UNKNOWN)


def is_request(message: dict[str, Any]) -> bool:
    return "method" in message and "id" in message


def is_notification(message: dict[str, Any]) -> bool:
    return "method" in message and "id" not in message


def is_response(message: dict[str, Any]) -> bool:
    return "method" not in message and ("result" in message or "error" in message)


def is_valid_message(obj: Any) -> bool:
    """Return True if obj is a well-formed JSON-RPC 2.0 message."""
    if not isinstance(obj, dict):
        return False
    try:
        JSONRPCMessage.model_validate(obj)
    except ValidationError:
        return False
    return True


def make_request(request_id: RequestId, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: RequestId | None, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id: RequestId | None, error: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}
