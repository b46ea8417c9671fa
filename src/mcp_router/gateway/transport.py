"""
Streamable HTTP transport.

One endpoint path serves the whole aggregator:

- POST  JSON-RPC message or batch -> routed, answered in the response body
        (JSON, or a single SSE event for clients that only accept SSE)
- GET   opens the session's SSE stream for server-initiated notifications
- DELETE closes a session

Sessions are identified by the ``Mcp-Session-Id`` header, issued on the
response to ``initialize``.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import Response, StreamingResponse
from mcp.types import INVALID_REQUEST, PARSE_ERROR

from ..core.jsonrpc import make_error
from ..core.observability import get_logger, get_uptime_seconds
from .catalog import CapabilityCatalog
from .registry import ServerRegistry
from .router import RequestRouter

logger = get_logger("mcp-router.transport")

SESSION_HEADER = "Mcp-Session-Id"
MAX_SESSIONS = 1024
QUEUE_SIZE = 1000
DISCONNECT_POLL_INTERVAL = 0.5


def sse_event(payload: dict[str, Any]) -> bytes:
    return f"event: message\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def json_response(content: Any, status_code: int = 200, headers: dict[str, str] | None = None) -> Response:
    """JSON response with a bare ``application/json`` content type."""
    return Response(
        content=json.dumps(content, ensure_ascii=False).encode("utf-8"),
        status_code=status_code,
        media_type="application/json",
        headers=headers,
    )


def _error_response(code: int, message: str, status_code: int) -> Response:
    return json_response(make_error(None, {"code": code, "message": message}), status_code=status_code)


def accepts_json(accept: str) -> bool:
    accept = accept.lower()
    return not accept or "application/json" in accept or "*/*" in accept or "application/*" in accept


def accepts_sse(accept: str) -> bool:
    return "text/event-stream" in accept.lower()


class SseSession:
    """One client session and, while attached, its SSE stream queue."""

    def __init__(self, session_id: str) -> None:
        self.id = session_id
        self.created_at = time.time()
        self.last_seen = self.created_at
        self.attached = False
        self.queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=QUEUE_SIZE)

    def touch(self) -> None:
        self.last_seen = time.time()

    def push(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("SSE queue full, dropping message", session=self.id, method=message.get("method"))
            return False
        return True

    def close(self) -> None:
        # Sentinel ends the stream; never blocks on a full queue
        while True:
            try:
                self.queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()


class SessionManager:
    """Tracks client sessions and fans notifications out to open streams."""

    def __init__(self, *, keepalive_interval: float = 15.0) -> None:
        self._keepalive_interval = keepalive_interval
        self._sessions: dict[str, SseSession] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> SseSession:
        if len(self._sessions) >= MAX_SESSIONS:
            self._evict()
        session = SseSession(uuid.uuid4().hex)
        self._sessions[session.id] = session
        logger.debug("Session created", session=session.id)
        return session

    def _evict(self) -> None:
        detached = [s for s in self._sessions.values() if not s.attached]
        if detached:
            oldest = min(detached, key=lambda s: s.last_seen)
            self.remove(oldest.id)

    def get(self, session_id: str) -> SseSession | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.debug("Session removed", session=session_id)
        return True

    def broadcast(self, message: dict[str, Any]) -> int:
        """Queue a server-initiated message on every attached stream."""
        delivered = 0
        for session in list(self._sessions.values()):
            if session.attached and session.push(message):
                delivered += 1
        return delivered

    def publish(self, message: dict[str, Any], target: str | None = None) -> int:
        """Queue a message on one session's stream, or on every stream when target is None."""
        if target is None:
            return self.broadcast(message)
        session = self._sessions.get(target)
        if session is None or not session.attached:
            logger.debug("No open stream for message", session=target, method=message.get("method"))
            return 0
        return 1 if session.push(message) else 0

    def close_all(self) -> None:
        """End every open stream (server shutdown)."""
        self._closed = True
        for session in self._sessions.values():
            session.close()

    async def stream(self, session: SseSession) -> AsyncIterator[bytes]:
        """Yield SSE frames for one session until it is closed."""
        session.attached = True
        logger.info("SSE stream opened", session=session.id)
        try:
            yield b": connected\n\n"
            while not self._closed:
                try:
                    message = await asyncio.wait_for(session.queue.get(), timeout=self._keepalive_interval)
                except TimeoutError:
                    yield b": keepalive\n\n"
                    continue
                if message is None:
                    return
                yield sse_event(message)
        finally:
            session.attached = False
            logger.info("SSE stream closed", session=session.id)


async def _dispatch_until_disconnect(
    router: RequestRouter,
    request: Request,
    messages: list[Any],
    session_id: str | None = None,
) -> list[dict[str, Any] | None] | None:
    """Dispatch messages concurrently; abandon them if the client goes away.

    Cancelling drops each call's pending entry; the child is not told.
    """
    work = asyncio.ensure_future(asyncio.gather(*(router.dispatch(m, session_id=session_id) for m in messages)))
    try:
        while True:
            done, _ = await asyncio.wait({work}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return work.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, abandoning request", count=len(messages))
                return None
    finally:
        if not work.done():
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await work


def create_http_app(
    router: RequestRouter,
    registry: ServerRegistry,
    catalog: CapabilityCatalog,
    sessions: SessionManager,
    *,
    path: str = "/",
    title: str = "mcp-router-aggregator",
    version: str = "0.1.0",
) -> FastAPI:
    """Build the FastAPI app exposing the aggregator over Streamable HTTP."""
    app = FastAPI(title=title, version=version, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.sessions = sessions

    def _session_from(request: Request) -> tuple[SseSession | None, Response | None]:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return None, None
        session = sessions.get(session_id)
        if session is None:
            return None, _error_response(INVALID_REQUEST, "Invalid or expired session", 404)
        session.touch()
        return session, None

    @app.get("/health")
    async def health() -> Response:
        summary = registry.get_health_summary()
        counts = catalog.counts()
        for server_id, info in summary["servers"].items():
            info["capabilities"] = counts.get(server_id, {})
        summary["status"] = "healthy" if summary["ready"] else "unhealthy"
        summary["uptime_seconds"] = round(get_uptime_seconds(), 1)
        summary["sessions"] = len(sessions)
        return json_response(summary, status_code=200 if summary["ready"] else 503)

    @app.post(path)
    async def handle_post(request: Request) -> Response:
        body = await request.body()
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Unparseable request body", size=len(body))
            return _error_response(PARSE_ERROR, "Parse error", 400)

        session, error = _session_from(request)
        if error is not None:
            return error

        batch = isinstance(payload, list)
        messages = payload if batch else [payload]
        if not messages:
            return _error_response(INVALID_REQUEST, "Empty batch", 400)

        results = await _dispatch_until_disconnect(router, request, messages, session.id if session else None)
        if results is None:
            return Response(status_code=499)
        responses = [r for r in results if r is not None]

        headers: dict[str, str] = {}
        if session is None and any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages):
            session = sessions.create()
        if session is not None:
            headers[SESSION_HEADER] = session.id

        if not responses:
            return Response(status_code=202, headers=headers)

        accept = request.headers.get("accept", "")
        if not accepts_json(accept) and accepts_sse(accept):
            if session is not None and session.attached:
                for response in responses:
                    session.push(response)
                return Response(status_code=202, headers=headers)
            frames = b"".join(sse_event(r) for r in responses)
            return Response(content=frames, media_type="text/event-stream", headers=headers)

        return json_response(responses if batch else responses[0], headers=headers)

    @app.get(path)
    async def handle_get(request: Request) -> Response:
        if not accepts_sse(request.headers.get("accept", "")):
            return Response(status_code=406)

        session, error = _session_from(request)
        if error is not None:
            return error
        if session is None:
            session = sessions.create()
        elif session.attached:
            return _error_response(INVALID_REQUEST, "Session already has an open stream", 409)

        return StreamingResponse(
            sessions.stream(session),
            media_type="text/event-stream",
            headers={SESSION_HEADER: session.id, "Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.delete(path)
    async def handle_delete(request: Request) -> Response:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _error_response(INVALID_REQUEST, f"Missing {SESSION_HEADER} header", 400)
        if not sessions.remove(session_id):
            return _error_response(INVALID_REQUEST, "Invalid or expired session", 404)
        logger.info("Session terminated", session=session_id)
        return Response(status_code=200)

    return app
