"""
Tests for the server registry and child sessions.
"""
from __future__ import annotations

import asyncio
import shlex
import sys
import time

import pytest

from mcp_router.core.errors import ChildUnavailable, ConfigurationError, ServerNotFound, UpstreamTimeout, WriteError
from mcp_router.core.jsonrpc import make_notification, make_request
from mcp_router.gateway.child import StdioChild
from mcp_router.gateway.config import ServerDescriptor
from mcp_router.gateway.registry import PendingResponse, ServerRegistry, SessionState

from fakes import (
    FIXTURE_SERVER,
    FakeChild,
    FakeFleet,
    FakeRpcError,
    FakeServer,
    fixture_descriptor,
    make_descriptor,
    wait_until,
)


@pytest.fixture
async def registry(fleet: FakeFleet):
    reg = ServerRegistry(channel_factory=fleet.factory, startup_timeout=1.0, shutdown_grace=0.5)
    yield reg
    await reg.stop_all()


class TestRegisterServer:
    """Startup and handshake."""

    async def test_ready_after_handshake(self, registry, fleet):
        """initialize then notifications/initialized, then ready."""
        fleet.servers["fs"] = FakeServer(tools=[{"name": "readFile"}])
        assert await registry.register_server(make_descriptor("fs"))

        session = registry.lookup("fs")
        assert session.state == SessionState.READY
        assert session.capabilities == {"tools": {"listChanged": True}}
        assert session.server_info["name"] == "fake"

        sent = [m["method"] for m in fleet.children["fs"].sent]
        assert sent == ["initialize", "notifications/initialized"]

    async def test_spawn_failure_is_not_fatal(self, registry, fleet):
        """A child that cannot start is crashed, not raised."""
        fleet.servers["bad"] = FakeServer(fail_spawn=True)
        assert not await registry.register_server(make_descriptor("bad"))
        assert registry.sessions["bad"].state == SessionState.CRASHED
        assert "cannot spawn" in registry.sessions["bad"].health.last_error

    async def test_handshake_timeout(self, registry, fleet):
        fleet.servers["slow"] = FakeServer(hold={"initialize"})
        assert not await registry.register_server(make_descriptor("slow"))
        assert registry.sessions["slow"].state == SessionState.CRASHED
        assert fleet.children["slow"].stopped

    async def test_handshake_rejected(self, registry, fleet):
        def reject(params):
            raise FakeRpcError(-32600, "unsupported protocol")

        fleet.servers["old"] = FakeServer(handlers={"initialize": reject})
        assert not await registry.register_server(make_descriptor("old"))
        assert "initialize rejected" in registry.sessions["old"].health.last_error

    async def test_duplicate_id(self, registry):
        await registry.register_server(make_descriptor("fs", "Files"))
        with pytest.raises(ConfigurationError):
            await registry.register_server(make_descriptor("fs", "Other"))

    async def test_duplicate_display_name(self, registry):
        await registry.register_server(make_descriptor("fs", "Files"))
        with pytest.raises(ConfigurationError):
            await registry.register_server(make_descriptor("fs2", "Files"))

    async def test_start_all_partial(self, registry, fleet):
        """One bad child does not stop the others."""
        fleet.servers["b"] = FakeServer(fail_spawn=True)
        results = await registry.start_all([make_descriptor("a"), make_descriptor("b")])
        assert results == {"a": True, "b": False}
        assert list(registry.ready_sessions) == ["a"]

    async def test_ready_listener(self, registry):
        seen = []

        async def on_ready(session):
            seen.append(session.server_id)

        registry.add_ready_listener(on_ready)
        await registry.register_server(make_descriptor("a"))
        assert seen == ["a"]


class TestLookup:
    async def test_unknown(self, registry):
        with pytest.raises(ServerNotFound, match="no such server"):
            registry.lookup("ghost")

    async def test_crashed(self, registry, fleet):
        fleet.servers["bad"] = FakeServer(fail_spawn=True)
        await registry.register_server(make_descriptor("bad"))
        with pytest.raises(ServerNotFound, match="crashed"):
            registry.lookup("bad")

    async def test_resolve_display_name(self, registry):
        await registry.register_server(make_descriptor("fs", "Files"))
        assert registry.resolve_display_name("Files") == "fs"
        assert registry.resolve_display_name("Nope") is None


class TestRequests:
    """Request correlation and failure isolation."""

    async def test_request_returns_raw_response(self, registry):
        await registry.register_server(make_descriptor("a"))
        response = await registry.lookup("a").request("tools/call", {"name": "x"}, timeout=1)
        assert response["result"]["isError"] is False

    async def test_child_error_returned(self, registry):
        """A child's error response is a response, not an exception."""
        await registry.register_server(make_descriptor("a"))
        response = await registry.lookup("a").request("bogus/method", {}, timeout=1)
        assert response["error"]["code"] == -32601

    async def test_timeout_cleans_pending(self, registry, fleet):
        """A slow child times out the call but stays ready."""
        fleet.servers["slow"] = FakeServer(hold={"tools/call"})
        await registry.register_server(make_descriptor("slow"))
        session = registry.lookup("slow")
        with pytest.raises(UpstreamTimeout):
            await session.request("tools/call", {"name": "x"}, timeout=0.05)
        assert session.pending_count == 0
        assert session.is_ready
        assert session.health.timeouts == 1

    async def test_crash_fails_all_pending(self, registry, fleet):
        """Three calls pending on a child that exits all fail at once."""
        fleet.servers["fs"] = FakeServer(hold={"tools/call"})
        await registry.register_server(make_descriptor("fs"))
        session = registry.lookup("fs")

        calls = [
            asyncio.create_task(session.request("tools/call", {"name": f"t{i}"}, timeout=30))
            for i in range(3)
        ]
        await wait_until(lambda: session.pending_count == 3)

        fleet.children["fs"].crash(code=1)
        results = await asyncio.wait_for(asyncio.gather(*calls, return_exceptions=True), timeout=2)

        assert all(isinstance(r, ChildUnavailable) for r in results)
        assert session.state == SessionState.CRASHED
        assert session.pending_count == 0
        with pytest.raises(ServerNotFound):
            registry.lookup("fs")

    async def test_other_child_unaffected(self, registry, fleet):
        await registry.start_all([make_descriptor("a"), make_descriptor("b")])
        fleet.children["a"].crash()
        await wait_until(lambda: registry.sessions["a"].state == SessionState.CRASHED)
        response = await registry.lookup("b").request("ping", {}, timeout=1)
        assert response["result"] == {}

    async def test_exit_listener(self, registry, fleet):
        exited = []

        async def on_exit(session):
            exited.append(session.server_id)

        registry.add_exit_listener(on_exit)
        await registry.register_server(make_descriptor("a"))
        fleet.children["a"].crash()
        await wait_until(lambda: exited == ["a"])

    async def test_late_response_dropped(self, registry, fleet):
        """A reply arriving after its call timed out is ignored; later calls still correlate."""
        fleet.servers["a"] = FakeServer(hold={"tools/call"})
        await registry.register_server(make_descriptor("a"))
        session = registry.lookup("a")
        child = fleet.children["a"]

        with pytest.raises(UpstreamTimeout):
            await session.request("tools/call", {"name": "first"}, timeout=0.05)
        assert session.pending_count == 0
        late_id = child.requests_for("tools/call")[0]["id"]
        child.emit({"jsonrpc": "2.0", "id": late_id, "result": {"content": [{"type": "text", "text": "late"}]}})

        fleet.servers["a"].hold.clear()
        response = await session.request("tools/call", {"name": "second"}, timeout=1)
        assert response["id"] != late_id
        assert '"second"' in response["result"]["content"][0]["text"]
        assert session.pending_count == 0
        assert session.health.timeouts == 1
        assert session.state == SessionState.READY

    async def test_input_closed_after_initialize_reply(self):
        """Losing the child between the handshake reply and notifications/initialized is a startup failure."""

        class ClosesAfterInitialize(FakeChild):
            async def send(self, message):
                if message.get("method") == "notifications/initialized":
                    raise WriteError(self.server_id)
                await super().send(message)

        registry = ServerRegistry(
            channel_factory=lambda d: ClosesAfterInitialize(d, FakeServer()),
            startup_timeout=1.0,
            shutdown_grace=0.5,
        )
        try:
            assert not await registry.register_server(make_descriptor("a"))
            session = registry.sessions["a"]
            assert session.state == SessionState.CRASHED
            assert "input stream is closed" in session.health.last_error
        finally:
            await registry.stop_all()


class TestChildInitiated:
    """Messages the child sends to the aggregator."""

    async def test_ping_answered(self, registry, fleet):
        await registry.register_server(make_descriptor("a"))
        child = fleet.children["a"]
        child.emit(make_request("srv-1", "ping"))
        await wait_until(lambda: any(m.get("id") == "srv-1" for m in child.sent))
        reply = next(m for m in child.sent if m.get("id") == "srv-1")
        assert reply["result"] == {}

    async def test_other_requests_rejected(self, registry, fleet):
        await registry.register_server(make_descriptor("a"))
        child = fleet.children["a"]
        child.emit(make_request("srv-2", "sampling/createMessage", {}))
        await wait_until(lambda: any(m.get("id") == "srv-2" for m in child.sent))
        reply = next(m for m in child.sent if m.get("id") == "srv-2")
        assert reply["error"]["code"] == -32601

    async def test_notifications_reach_listeners(self, registry, fleet):
        received = []

        async def on_notification(session, message):
            received.append((session.server_id, message["method"]))

        registry.add_notification_listener(on_notification)
        await registry.register_server(make_descriptor("a"))
        fleet.children["a"].emit(make_notification("notifications/tools/list_changed"))
        await wait_until(lambda: received == [("a", "notifications/tools/list_changed")])


class TestStopAll:
    async def test_stop_all(self, registry, fleet):
        await registry.start_all([make_descriptor("a"), make_descriptor("b")])
        await registry.stop_all()
        assert {s.state for s in registry.sessions.values()} == {SessionState.STOPPED}
        assert all(c.stopped for c in fleet.children.values())

    async def test_health_summary(self, registry, fleet):
        fleet.servers["b"] = FakeServer(fail_spawn=True)
        await registry.start_all([make_descriptor("a"), make_descriptor("b")])
        summary = registry.get_health_summary()
        assert summary["total"] == 2
        assert summary["ready"] == 1
        assert summary["crashed"] == 1
        assert summary["servers"]["b"]["state"] == "crashed"


class TestPendingResponse:
    async def test_age_ms(self):
        future = asyncio.get_running_loop().create_future()
        pending = PendingResponse(internal_id=1, method="ping", future=future, created_at=time.monotonic() - 0.25)
        assert 250 <= pending.age_ms() < 1250


class TestWithRealProcess:
    """The registry driving the stdio fixture server."""

    async def test_process_crash_fails_pending(self):
        registry = ServerRegistry(channel_factory=StdioChild, startup_timeout=5, shutdown_grace=1)
        try:
            assert await registry.register_server(fixture_descriptor("fx", "--exit-on", "tools/call"))
            session = registry.lookup("fx")
            with pytest.raises(ChildUnavailable):
                await session.request("tools/call", {"name": "echo"}, timeout=5)
            await wait_until(lambda: session.state == SessionState.CRASHED, timeout=5)
            assert session.health.exit is not None
            assert session.health.exit.code == 3
        finally:
            await registry.stop_all()

    async def test_crash_seen_while_descendant_holds_stdout(self):
        """A grandchild keeping stdout open neither hides the crash nor blocks shutdown."""
        inner = f"{shlex.quote(sys.executable)} {shlex.quote(str(FIXTURE_SERVER))} --exit-on tools/call"
        descriptor = ServerDescriptor(
            id="wrapped",
            display_name="Wrapped",
            command="/bin/sh",
            args=("-c", f"sleep 20 & exec {inner}"),
        )
        registry = ServerRegistry(channel_factory=StdioChild, startup_timeout=5, shutdown_grace=1)
        try:
            assert await registry.register_server(descriptor)
            session = registry.lookup("wrapped")
            with pytest.raises(ChildUnavailable):
                await asyncio.wait_for(session.request("tools/call", {"name": "echo"}, timeout=10), timeout=5)
            await wait_until(lambda: session.state == SessionState.CRASHED, timeout=5)
            assert session.health.exit.code == 3
            with pytest.raises(ServerNotFound):
                registry.lookup("wrapped")
        finally:
            await asyncio.wait_for(registry.stop_all(), timeout=5)

    async def test_silent_child_times_out_at_startup(self):
        registry = ServerRegistry(channel_factory=StdioChild, startup_timeout=0.5, shutdown_grace=1)
        try:
            assert not await registry.register_server(fixture_descriptor("mute", "--silent-on", "initialize"))
            assert "timed out" in registry.sessions["mute"].health.last_error
        finally:
            await registry.stop_all()
