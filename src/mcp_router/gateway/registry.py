"""
Server Registry.

Owns every ChildSession and drives its lifecycle:

    starting --handshake ok--> ready --unexpected exit--> crashed
    starting --exit/timeout--> crashed
    any (except stopped) --shutdown--> stopped

Each session correlates its own outbound request ids with pending
responses, so traffic to one child never waits on another. There is no
automatic restart; a crashed child stays crashed until the aggregator is
restarted.
"""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog
from mcp.types import LATEST_PROTOCOL_VERSION, METHOD_NOT_FOUND

from ..core.errors import (
    ChildStartupFailure,
    ChildUnavailable,
    ConfigurationError,
    ServerNotFound,
    UpstreamTimeout,
    error_object,
)
from ..core.jsonrpc import (
    RequestId,
    is_notification,
    is_request,
    is_response,
    make_error,
    make_notification,
    make_request,
    make_result,
)
from .child import ChannelFactory, ChildChannel, ChildExited, StdioChild
from .config import ServerDescriptor

logger = structlog.get_logger("mcp-router.registry")

CLIENT_NAME = "mcp-router-aggregator"
CLIENT_VERSION = "0.1.0"
EXIT_DRAIN_TIMEOUT = 0.5


class SessionState(StrEnum):
    """Lifecycle states for a child session."""
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"
    STOPPED = "stopped"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.STARTING: {SessionState.READY, SessionState.CRASHED, SessionState.STOPPED},
    SessionState.READY: {SessionState.CRASHED, SessionState.STOPPED},
    SessionState.CRASHED: {SessionState.STOPPED},
    SessionState.STOPPED: set(),
}


@dataclass
class PendingResponse:
    """One forwarded request awaiting the child's reply."""
    internal_id: int
    method: str
    future: asyncio.Future[dict[str, Any]]
    external_id: RequestId | None = None
    created_at: float = field(default_factory=time.monotonic)

    def age_ms(self) -> float:
        return round((time.monotonic() - self.created_at) * 1000, 2)


@dataclass
class SessionHealth:
    """Health information for a child session."""
    started_at: float = 0.0
    ready_at: float = 0.0
    requests: int = 0
    failures: int = 0
    timeouts: int = 0
    last_error: str | None = None
    exit: ChildExited | None = None


ReadyListener = Callable[["ChildSession"], Awaitable[None]]
ExitListener = Callable[["ChildSession"], Awaitable[None]]
NotificationListener = Callable[["ChildSession", dict[str, Any]], Awaitable[None]]


class ChildSession:
    """Runtime state bound to one ServerDescriptor while its process lives."""

    def __init__(
        self,
        descriptor: ServerDescriptor,
        channel: ChildChannel,
        *,
        on_notification: Callable[[ChildSession, dict[str, Any]], None] | None = None,
        on_exit: Callable[[ChildSession, ChildExited], Awaitable[None]] | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.channel = channel
        self.health = SessionHealth()
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None
        self._state = SessionState.STARTING
        self._pending: dict[int, PendingResponse] = {}
        self._ids = itertools.count(1)
        self._reader: asyncio.Task[None] | None = None
        self._on_notification = on_notification
        self._on_exit = on_exit
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def server_id(self) -> str:
        return self.descriptor.id

    @property
    def display_name(self) -> str:
        return self.descriptor.display_name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _transition(self, new: SessionState) -> bool:
        if new == self._state:
            return False
        if new not in _TRANSITIONS[self._state]:
            logger.debug(
                "Ignoring state transition",
                server=self.server_id,
                current=self._state.value,
                requested=new.value,
            )
            return False
        logger.debug("Session state", server=self.server_id, old=self._state.value, new=new.value)
        self._state = new
        return True

    async def start(self, startup_timeout: float) -> None:
        """Spawn the child and complete the MCP initialize handshake.

        Raises:
            ChildStartupFailure: Spawn failed, the child exited, or the
                handshake timed out or was rejected.
        """
        self.health.started_at = time.time()
        await self.channel.start()
        self._reader = asyncio.create_task(self._read_loop(), name=f"{self.server_id}-reader")

        try:
            response = await self.request(
                "initialize",
                {
                    "protocolVersion": LATEST_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
                },
                timeout=startup_timeout,
            )
        except UpstreamTimeout as e:
            raise ChildStartupFailure(
                self.server_id,
                f"initialize handshake timed out after {startup_timeout:g}s",
                stderr_tail=self.channel.stderr_tail,
            ) from e
        except ChildUnavailable as e:
            raise ChildStartupFailure(
                self.server_id, e.message, stderr_tail=self.channel.stderr_tail
            ) from e

        if "error" in response:
            raise ChildStartupFailure(
                self.server_id,
                f"initialize rejected: {response['error']}",
                stderr_tail=self.channel.stderr_tail,
            )

        result = response.get("result") or {}
        self.server_info = result.get("serverInfo") or {}
        self.capabilities = result.get("capabilities") or {}
        self.protocol_version = result.get("protocolVersion")

        try:
            await self.notify("notifications/initialized")
        except ChildUnavailable as e:
            raise ChildStartupFailure(
                self.server_id, e.message, stderr_tail=self.channel.stderr_tail
            ) from e

        if not self._transition(SessionState.READY):
            raise ChildStartupFailure(self.server_id, f"session became {self._state.value} during handshake")
        self.health.ready_at = time.time()

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float,
        external_id: RequestId | None = None,
    ) -> dict[str, Any]:
        """Send one request to the child and wait for its response message.

        The returned dict is the child's raw JSON-RPC response, carrying
        either ``result`` or ``error``.

        Raises:
            ServerNotFound: The session is crashed or stopped.
            WriteError: The child's input stream is closed.
            ChildUnavailable: The child exited while the call was pending.
            UpstreamTimeout: No reply within timeout.
        """
        if self._state in (SessionState.CRASHED, SessionState.STOPPED):
            raise ServerNotFound(self.server_id, self._state.value)

        internal_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        pending = PendingResponse(
            internal_id=internal_id,
            method=method,
            future=future,
            external_id=external_id,
        )
        self._pending[internal_id] = pending
        self.health.requests += 1

        try:
            await self.channel.send(make_request(internal_id, method, params))
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            self.health.timeouts += 1
            logger.warning(
                "Upstream call timed out",
                server=self.server_id,
                method=method,
                internal_id=internal_id,
                external_id=external_id,
                timeout=timeout,
                waited_ms=pending.age_ms(),
            )
            raise UpstreamTimeout(self.server_id, method, timeout) from None
        except ChildUnavailable as e:
            self.health.failures += 1
            self.health.last_error = e.message
            raise
        finally:
            self._pending.pop(internal_id, None)
            logger.debug(
                "Upstream call finished",
                server=self.server_id,
                method=method,
                internal_id=internal_id,
                elapsed_ms=pending.age_ms(),
            )

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.channel.send(make_notification(method, params))

    async def _read_loop(self) -> None:
        """Correlate child messages until the process exits, then report the exit."""
        reader = asyncio.create_task(self._consume_messages(), name=f"{self.server_id}-messages")
        exit_wait = asyncio.ensure_future(self.channel.wait())
        try:
            await asyncio.wait({reader, exit_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not reader.done():
                # Process is gone; read what it wrote before exiting, but a
                # descendant holding stdout must not keep the session alive
                await asyncio.wait({reader}, timeout=EXIT_DRAIN_TIMEOUT)
            exited = await exit_wait
        finally:
            for task in (reader, exit_wait):
                if not task.done():
                    task.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        self.health.exit = exited
        if self._on_exit is not None:
            await self._on_exit(self, exited)

    async def _consume_messages(self) -> None:
        async for message in self.channel.messages():
            try:
                self._dispatch(message)
            except Exception:
                logger.exception("Failed to handle message from child", server=self.server_id)

    def _dispatch(self, message: dict[str, Any]) -> None:
        if is_response(message):
            pending = self._pending.pop(message.get("id"), None)  # type: ignore[arg-type]
            if pending is None:
                logger.debug(
                    "Dropping response with no pending request",
                    server=self.server_id,
                    internal_id=message.get("id"),
                )
                return
            if not pending.future.done():
                pending.future.set_result(message)
        elif is_request(message):
            self._spawn(self._answer_child_request(message))
        elif is_notification(message):
            if self._on_notification is not None:
                self._on_notification(self, message)

    async def _answer_child_request(self, message: dict[str, Any]) -> None:
        """Answer requests the child sends to us (we act as its client)."""
        method = message.get("method")
        if method == "ping":
            reply = make_result(message["id"], {})
        else:
            reply = make_error(
                message["id"],
                {"code": METHOD_NOT_FOUND, "message": f"Method not supported by aggregator: {method}"},
            )
        try:
            await self.channel.send(reply)
        except ChildUnavailable as e:
            logger.debug("Could not answer child request", server=self.server_id, method=method, error=e.message)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def fail_pending(self, exc: ChildUnavailable) -> int:
        """Fail every in-flight call with exc. Returns how many were failed."""
        pending = list(self._pending.values())
        self._pending.clear()
        for p in pending:
            if not p.future.done():
                p.future.set_exception(exc)
        return len(pending)

    def mark_crashed(self, reason: str) -> bool:
        if not self._transition(SessionState.CRASHED):
            return False
        self.health.last_error = reason
        failed = self.fail_pending(ChildUnavailable(self.server_id, reason))
        if failed:
            logger.warning("Failed pending calls", server=self.server_id, count=failed, reason=reason)
        return True

    async def stop(self, grace: float) -> None:
        """Explicit shutdown: fail pending calls and terminate the child."""
        self._transition(SessionState.STOPPED)
        self.fail_pending(ChildUnavailable(self.server_id, "server is stopping"))
        await self.channel.stop(grace)
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        for task in list(self._tasks):
            task.cancel()


class ServerRegistry:
    """Arena of child sessions with string-keyed lookup.

    Listeners let the catalog and the router react to lifecycle events
    without the registry knowing about either.
    """

    def __init__(
        self,
        *,
        channel_factory: ChannelFactory = StdioChild,
        startup_timeout: float = 30.0,
        shutdown_grace: float = 5.0,
    ) -> None:
        self._channel_factory = channel_factory
        self._startup_timeout = startup_timeout
        self._shutdown_grace = shutdown_grace
        self._sessions: dict[str, ChildSession] = {}
        self._id_by_display_name: dict[str, str] = {}
        self._ready_listeners: list[ReadyListener] = []
        self._exit_listeners: list[ExitListener] = []
        self._notification_listeners: list[NotificationListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def sessions(self) -> dict[str, ChildSession]:
        return dict(self._sessions)

    @property
    def ready_sessions(self) -> dict[str, ChildSession]:
        return {k: v for k, v in self._sessions.items() if v.is_ready}

    def add_ready_listener(self, listener: ReadyListener) -> None:
        self._ready_listeners.append(listener)

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    def add_notification_listener(self, listener: NotificationListener) -> None:
        self._notification_listeners.append(listener)

    async def register_server(self, descriptor: ServerDescriptor) -> bool:
        """Start one child and complete its handshake.

        A startup failure is logged and leaves the session crashed; it is
        never raised, so one bad child cannot stop the others.

        Returns:
            True if the child reached the ready state.

        Raises:
            ConfigurationError: The id or display name is already registered.
        """
        if descriptor.id in self._sessions:
            msg = f"Server id already registered: {descriptor.id}"
            raise ConfigurationError(msg)
        if descriptor.display_name in self._id_by_display_name:
            msg = f"Server display name already registered: {descriptor.display_name}"
            raise ConfigurationError(msg)

        session = ChildSession(
            descriptor,
            self._channel_factory(descriptor),
            on_notification=self._handle_notification,
            on_exit=self._handle_exit,
        )
        self._sessions[descriptor.id] = session
        self._id_by_display_name[descriptor.display_name] = descriptor.id

        logger.info(
            "Starting server",
            server=descriptor.id,
            name=descriptor.display_name,
            command=" ".join(descriptor.argv),
        )

        try:
            await session.start(self._startup_timeout)
        except ChildStartupFailure as e:
            session.mark_crashed(e.reason)
            session.health.last_error = e.reason
            logger.error(
                "Server failed to start",
                server=descriptor.id,
                error=e.reason,
                stderr_tail=e.stderr_tail[-10:] or None,
            )
            await session.channel.stop(self._shutdown_grace)
            return False

        logger.info(
            "Server ready",
            server=descriptor.id,
            server_info=session.server_info or None,
            protocol=session.protocol_version,
        )

        for listener in self._ready_listeners:
            try:
                await listener(session)
            except Exception:
                logger.exception("Ready listener failed", server=descriptor.id)
        return True

    async def start_all(self, descriptors: list[ServerDescriptor]) -> dict[str, bool]:
        """Start all children concurrently.

        Returns:
            Dict mapping server id to whether it became ready.
        """
        outcomes = await asyncio.gather(
            *(self.register_server(d) for d in descriptors),
            return_exceptions=True,
        )

        results: dict[str, bool] = {}
        for descriptor, outcome in zip(descriptors, outcomes, strict=True):
            if isinstance(outcome, ConfigurationError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Failed to start server", server=descriptor.id, error=str(outcome))
                results[descriptor.id] = False
            else:
                results[descriptor.id] = outcome
        return results

    def lookup(self, server_id: str) -> ChildSession:
        """Return the ready session for server_id.

        Raises:
            ServerNotFound: Unknown id, or the session is crashed/stopped.
            ChildUnavailable: The session is still starting.
        """
        session = self._sessions.get(server_id)
        if session is None:
            raise ServerNotFound(server_id)
        if session.state in (SessionState.CRASHED, SessionState.STOPPED):
            raise ServerNotFound(server_id, session.state.value)
        if session.state != SessionState.READY:
            raise ChildUnavailable(server_id, "server is still starting")
        return session

    def resolve_display_name(self, display_name: str) -> str | None:
        return self._id_by_display_name.get(display_name)

    def _handle_notification(self, session: ChildSession, message: dict[str, Any]) -> None:
        if not session.is_ready:
            return
        for listener in self._notification_listeners:
            self._spawn(listener(session, message))

    async def _handle_exit(self, session: ChildSession, exited: ChildExited) -> None:
        if session.state == SessionState.STOPPED:
            return

        was_ready = session.is_ready
        if not session.mark_crashed(f"server {exited.describe()}"):
            return

        logger.error(
            "Server crashed",
            server=session.server_id,
            status=exited.describe(),
            was_ready=was_ready,
            stderr_tail=session.channel.stderr_tail[-10:] or None,
        )
        for listener in self._exit_listeners:
            try:
                await listener(session)
            except Exception:
                logger.exception("Exit listener failed", server=session.server_id)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Notification listener failed", error=error_object(task.exception())["message"])

    async def stop_all(self) -> None:
        """Stop every child and cancel background work."""
        sessions = list(self._sessions.values())
        await asyncio.gather(
            *(s.stop(self._shutdown_grace) for s in sessions),
            return_exceptions=True,
        )
        for task in list(self._tasks):
            task.cancel()
        logger.info("All servers stopped", count=len(sessions))

    def get_health_summary(self) -> dict[str, Any]:
        """Get a summary of all child session states."""
        sessions = self._sessions.values()
        summary: dict[str, Any] = {
            "total": len(self._sessions),
            "ready": sum(1 for s in sessions if s.state == SessionState.READY),
            "starting": sum(1 for s in sessions if s.state == SessionState.STARTING),
            "crashed": sum(1 for s in sessions if s.state == SessionState.CRASHED),
            "stopped": sum(1 for s in sessions if s.state == SessionState.STOPPED),
            "servers": {},
        }

        for server_id, session in self._sessions.items():
            exit_info = session.health.exit
            summary["servers"][server_id] = {
                "name": session.display_name,
                "state": session.state.value,
                "pending": session.pending_count,
                "requests": session.health.requests,
                "timeouts": session.health.timeouts,
                "failures": session.health.failures,
                "error": session.health.last_error,
                "exit": exit_info.describe() if exit_info else None,
                "server_info": session.server_info or None,
            }

        return summary
