"""
Request Router.

Translates one external MCP request into one child-local request and
back. Catalog listings are answered directly from the merged catalog;
name- and URI-targeted calls are rewritten into the owning child's
namespace, forwarded, and their results rewritten back.

Every failure becomes a JSON-RPC error response for the request that
caused it.
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import LATEST_PROTOCOL_VERSION

from ..core.errors import (
    AggregatorError,
    InvalidRequest,
    InvalidTarget,
    MethodNotFound,
    error_object,
)
from ..core.jsonrpc import (
    JSONRPC_VERSION,
    MethodCategory,
    RequestId,
    classify,
    is_response,
    make_error,
    make_notification,
    make_result,
)
from ..core.observability import get_logger
from .catalog import LIST_CHANGED, METHOD_KINDS, CapabilityCatalog, CapabilityKind
from .registry import ChildSession, ServerRegistry

logger = get_logger("mcp-router.router")

# Called with the message and the client session it is for, or None for all sessions
Publisher = Callable[[dict[str, Any], str | None], object]

RELAYED_NOTIFICATIONS = frozenset({"notifications/message"})

_KIND_NOTIFICATIONS: dict[CapabilityKind, str] = {
    kind: method for method, kinds in LIST_CHANGED.items() for kind in kinds
}


class RequestRouter:
    """Routes inbound JSON-RPC messages to children and relays their events."""

    def __init__(
        self,
        registry: ServerRegistry,
        catalog: CapabilityCatalog,
        *,
        request_timeout: float = 60.0,
        server_name: str = "mcp-router-aggregator",
        server_version: str = "0.1.0",
    ) -> None:
        self._registry = registry
        self._catalog = catalog
        self._namespacing = catalog.namespacing
        self._request_timeout = request_timeout
        self._server_name = server_name
        self._server_version = server_version
        self._publishers: list[Publisher] = []
        self._progress_routes: dict[tuple[str, str | int], str] = {}

    def add_publisher(self, publisher: Publisher) -> None:
        """Register a sink for server-initiated notifications (SSE sessions)."""
        self._publishers.append(publisher)

    def publish(self, message: dict[str, Any], target: str | None = None) -> None:
        for publisher in self._publishers:
            publisher(message, target)

    # ------------------------------------------------------------------
    # Inbound client messages
    # ------------------------------------------------------------------

    async def dispatch(self, message: Any, *, session_id: str | None = None) -> dict[str, Any] | None:
        """Handle one inbound message.

        Args:
            message: The decoded JSON-RPC message.
            session_id: Client session the message arrived on; progress for
                the calls it starts is delivered only there.

        Returns:
            The JSON-RPC response, or None for notifications and responses.
        """
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            request_id = message.get("id") if isinstance(message, dict) else None
            return make_error(request_id, InvalidRequest("Not a JSON-RPC 2.0 message").to_jsonrpc())

        if is_response(message):
            # We never send requests to clients, so there is nothing to correlate
            logger.debug("Ignoring client response", id=message.get("id"))
            return None

        category = classify(message)
        if category == MethodCategory.NOTIFICATION:
            self._handle_client_notification(message)
            return None

        request_id: RequestId = message.get("id")  # type: ignore[assignment]
        method = message.get("method")
        params = message.get("params")
        if params is None:
            params = {}

        try:
            if not isinstance(method, str):
                raise InvalidRequest("Missing method")
            if not isinstance(params, dict):
                raise InvalidRequest("params must be an object")
            return await self._route(category, request_id, method, params, session_id)
        except AggregatorError as e:
            logger.info(
                "Request failed",
                method=method,
                id=request_id,
                category=e.category.value,
                error=e.message,
            )
            return make_error(request_id, e.to_jsonrpc())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unexpected error while routing", method=method, id=request_id)
            return make_error(request_id, error_object(e))

    async def _route(
        self,
        category: MethodCategory,
        request_id: RequestId,
        method: str,
        params: dict[str, Any],
        origin: str | None = None,
    ) -> dict[str, Any]:
        if category == MethodCategory.INITIALIZE:
            return make_result(request_id, self._initialize_result(params))
        if category == MethodCategory.PING:
            return make_result(request_id, {})
        if category == MethodCategory.LIST:
            kind = METHOD_KINDS[method]
            return make_result(request_id, {kind.value: self._catalog.list_items(kind)})
        if category == MethodCategory.CALL_BY_NAME:
            return await self._call_by_name(request_id, method, params, origin)
        if category == MethodCategory.CALL_BY_URI:
            return await self._call_by_uri(request_id, method, params, origin)
        if category == MethodCategory.COMPLETE:
            return await self._complete(request_id, method, params, origin)
        if category == MethodCategory.FAN_OUT:
            return await self._fan_out(request_id, method, params)
        raise MethodNotFound(method)

    def _initialize_result(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        return {
            "protocolVersion": version,
            "capabilities": {
                "tools": {"listChanged": True},
                "resources": {"listChanged": True, "subscribe": True},
                "prompts": {"listChanged": True},
                "completions": {},
                "logging": {},
            },
            "serverInfo": {"name": self._server_name, "version": self._server_version},
            "instructions": self._instructions(),
        }

    def _instructions(self) -> str:
        ready = ", ".join(self._registry.ready_sessions) or "none"
        if not self._namespacing.prefixed:
            return f"MCP aggregator proxying one server [{ready}]. Names are passed through unchanged."
        return (
            f"MCP aggregator combining servers [{ready}].\n"
            "Tools and prompts are named `<server>__<name>`; "
            "resources are addressed as `resource://<server name>/<path>`."
        )

    async def _call_by_name(
        self,
        request_id: RequestId,
        method: str,
        params: dict[str, Any],
        origin: str | None,
    ) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str):
            raise InvalidTarget(str(name), "missing 'name'")
        server_id, local_name = self._namespacing.resolve_name(name)
        session = self._registry.lookup(server_id)
        return await self._forward(session, request_id, method, {**params, "name": local_name}, origin)

    def _resolve_local_uri(self, uri: Any) -> tuple[str, str]:
        if not isinstance(uri, str):
            raise InvalidTarget(str(uri), "missing 'uri'")
        target = self._namespacing.resolve_uri(uri)
        if target.verbatim:
            return target.server_id, target.path
        local = self._catalog.slice_for(target.server_id).local_uri(uri, target.path)
        return target.server_id, local

    async def _call_by_uri(
        self,
        request_id: RequestId,
        method: str,
        params: dict[str, Any],
        origin: str | None,
    ) -> dict[str, Any]:
        server_id, local_uri = self._resolve_local_uri(params.get("uri"))
        session = self._registry.lookup(server_id)
        return await self._forward(session, request_id, method, {**params, "uri": local_uri}, origin)

    async def _complete(
        self,
        request_id: RequestId,
        method: str,
        params: dict[str, Any],
        origin: str | None,
    ) -> dict[str, Any]:
        ref = params.get("ref")
        if not isinstance(ref, dict):
            raise InvalidTarget(str(ref), "missing 'ref'")

        ref_type = ref.get("type")
        if ref_type == "ref/prompt":
            name = ref.get("name")
            if not isinstance(name, str):
                raise InvalidTarget(str(name), "missing prompt name in ref")
            server_id, local_name = self._namespacing.resolve_name(name)
            local_ref = {**ref, "name": local_name}
        elif ref_type == "ref/resource":
            server_id, local_uri = self._resolve_local_uri(ref.get("uri"))
            local_ref = {**ref, "uri": local_uri}
        else:
            raise InvalidTarget(str(ref_type), "unsupported completion ref type")

        session = self._registry.lookup(server_id)
        return await self._forward(session, request_id, method, {**params, "ref": local_ref}, origin)

    async def _fan_out(self, request_id: RequestId, method: str, params: dict[str, Any]) -> dict[str, Any]:
        sessions = list(self._registry.ready_sessions.values())
        outcomes = await asyncio.gather(
            *(s.request(method, params, timeout=self._request_timeout, external_id=request_id) for s in sessions),
            return_exceptions=True,
        )
        for session, outcome in zip(sessions, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Fan-out call failed", server=session.server_id, method=method, error=str(outcome))
            elif "error" in outcome:
                logger.debug("Fan-out call rejected", server=session.server_id, method=method, error=outcome["error"])
        return make_result(request_id, {})

    async def _forward(
        self,
        session: ChildSession,
        request_id: RequestId,
        method: str,
        params: dict[str, Any],
        origin: str | None = None,
    ) -> dict[str, Any]:
        route: tuple[str, str | int] | None = None
        token = _progress_token(params)
        if token is not None and origin is not None:
            route = (session.server_id, token)
            self._progress_routes[route] = origin
        try:
            response = await session.request(
                method,
                params,
                timeout=self._request_timeout,
                external_id=request_id,
            )
        finally:
            if route is not None:
                self._progress_routes.pop(route, None)
        if "error" in response:
            return make_error(request_id, response["error"])
        result = self._namespacing.externalize_payload(session.server_id, response.get("result") or {})
        return make_result(request_id, result)

    def _handle_client_notification(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method == "notifications/cancelled":
            # Child requests are fire-and-forget once sent; the caller's
            # disconnect already dropped its pending entry.
            logger.debug("Client cancelled request", request_id=(message.get("params") or {}).get("requestId"))
        else:
            logger.debug("Client notification", method=method)

    # ------------------------------------------------------------------
    # Child lifecycle and notifications
    # ------------------------------------------------------------------

    async def on_child_ready(self, session: ChildSession) -> None:
        catalog_slice = await self._catalog.refresh(session)
        if catalog_slice is not None:
            self._announce_changed(kind for kind in CapabilityKind if catalog_slice.items(kind))

    async def on_child_exit(self, session: ChildSession) -> None:
        had = self._catalog.slice_for(session.server_id)
        self._catalog.remove(session.server_id)
        self._announce_changed(kind for kind in CapabilityKind if had.items(kind))

    async def on_child_notification(self, session: ChildSession, message: dict[str, Any]) -> None:
        method = message.get("method", "")
        params = message.get("params") or {}

        if method in LIST_CHANGED:
            if await self._catalog.refresh(session, LIST_CHANGED[method]) is not None:
                self.publish(make_notification(method))
        elif method == "notifications/resources/updated":
            uri = params.get("uri")
            if isinstance(uri, str):
                external = self._namespacing.external_uri(session.server_id, uri)
                self.publish(make_notification(method, {**params, "uri": external}))
        elif method == "notifications/progress":
            self._relay_progress(session, params)
        elif method in RELAYED_NOTIFICATIONS:
            self.publish(make_notification(method, params or None))
        else:
            logger.debug("Dropping child notification", server=session.server_id, method=method)

    def _relay_progress(self, session: ChildSession, params: dict[str, Any]) -> None:
        token = params.get("progressToken")
        target: str | None = None
        if isinstance(token, (str, int)):
            target = self._progress_routes.get((session.server_id, token))
        if target is None:
            logger.debug("Dropping progress for unknown token", server=session.server_id, token=token)
            return
        self.publish(make_notification("notifications/progress", params), target=target)

    def _announce_changed(self, kinds: Any) -> None:
        for method in dict.fromkeys(_KIND_NOTIFICATIONS[k] for k in kinds):
            self.publish(make_notification(method))


def _progress_token(params: dict[str, Any]) -> str | int | None:
    meta = params.get("_meta")
    if not isinstance(meta, dict):
        return None
    token = meta.get("progressToken")
    return token if isinstance(token, (str, int)) else None
