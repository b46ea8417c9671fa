"""
End-to-end tests: the aggregator over real stdio child processes.
"""
from __future__ import annotations

import socket

import httpx
import pytest

from mcp_router.core.errors import ConfigurationError
from mcp_router.core.jsonrpc import make_request
from mcp_router.gateway.config import AggregatorConfig, ServerDescriptor
from mcp_router.gateway.server import Aggregator, bind_socket, serve

from fakes import fixture_descriptor

UNSTARTABLE = ServerDescriptor(id="bad", display_name="Bad", command="/nonexistent/mcp-server")


def _config(*servers: ServerDescriptor, **kwargs) -> AggregatorConfig:
    kwargs.setdefault("startup_timeout", 5.0)
    kwargs.setdefault("request_timeout", 5.0)
    kwargs.setdefault("shutdown_grace", 1.0)
    return AggregatorConfig(servers=list(servers), host="127.0.0.1", port=0, **kwargs)


@pytest.fixture
async def running():
    """Start an Aggregator over real children and hand back an HTTP client for it."""
    aggregators: list[Aggregator] = []

    async def start(*servers: ServerDescriptor, **kwargs) -> httpx.AsyncClient:
        aggregator = Aggregator(_config(*servers, **kwargs))
        aggregators.append(aggregator)
        await aggregator.start()
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=aggregator.app), base_url="http://testserver")

    yield start

    for aggregator in aggregators:
        await aggregator.stop()


async def _rpc(client: httpx.AsyncClient, request_id, method: str, params=None) -> dict:
    response = await client.post("/", json=make_request(request_id, method, params))
    assert response.status_code == 200
    return response.json()


class TestSingleServer:
    """One child: names and URIs pass through unchanged."""

    async def test_echo_round_trip(self, running):
        client = await running(fixture_descriptor("default", display_name="fixture"))
        async with client:
            tools = await _rpc(client, 1, "tools/list")
            assert [t["name"] for t in tools["result"]["tools"]] == ["echo"]

            reply = await _rpc(client, 2, "tools/call", {"name": "echo", "arguments": {"text": "hello"}})
            assert reply == {"jsonrpc": "2.0", "id": 2, "result": {"content": [{"type": "text", "text": "hello"}]}}

    async def test_resource_read(self, running):
        client = await running(fixture_descriptor("default", display_name="fixture"))
        async with client:
            reply = await _rpc(client, 3, "resources/read", {"uri": "file:///tmp/x.txt"})
            assert reply["result"]["contents"][0]["text"] == "contents of file:///tmp/x.txt"


class TestMultipleServers:
    async def test_prefixed_catalog(self, running):
        client = await running(fixture_descriptor("a"), fixture_descriptor("b"))
        async with client:
            tools = await _rpc(client, 1, "tools/list")
            assert [t["name"] for t in tools["result"]["tools"]] == ["a__echo", "b__echo"]

            resources = await _rpc(client, 2, "resources/list")
            assert [r["uri"] for r in resources["result"]["resources"]] == [
                "resource://A//tmp/x.txt",
                "resource://B//tmp/x.txt",
            ]

    async def test_call_routed_to_owner(self, running):
        client = await running(fixture_descriptor("a"), fixture_descriptor("b"))
        async with client:
            reply = await _rpc(client, 1, "tools/call", {"name": "b__echo", "arguments": {"text": "via b"}})
            assert reply["result"]["content"][0]["text"] == "via b"

    async def test_read_maps_uri_back(self, running):
        client = await running(fixture_descriptor("a"), fixture_descriptor("b"))
        async with client:
            reply = await _rpc(client, 1, "resources/read", {"uri": "resource://B//tmp/x.txt"})
            content = reply["result"]["contents"][0]
            assert content["text"] == "contents of file:///tmp/x.txt"
            assert content["uri"] == "resource://B//tmp/x.txt"

    async def test_partial_startup(self, running):
        """A server that cannot start is left out; the rest are served."""
        client = await running(fixture_descriptor("a"), UNSTARTABLE)
        async with client:
            tools = await _rpc(client, 1, "tools/list")
            assert [t["name"] for t in tools["result"]["tools"]] == ["a__echo"]

            health = (await client.get("/health")).json()
            assert health["servers"]["bad"]["state"] == "crashed"
            assert health["ready"] == 1


class TestStartupFailures:
    async def test_no_server_ready(self):
        aggregator = Aggregator(_config(UNSTARTABLE))
        try:
            with pytest.raises(ConfigurationError, match="No server could be started"):
                await aggregator.start()
        finally:
            await aggregator.stop()

    async def test_serve_duplicate_names(self):
        config = _config(
            ServerDescriptor(id="a", display_name="Same", command="x"),
            ServerDescriptor(id="b", display_name="Same", command="y"),
        )
        with pytest.raises(ConfigurationError, match="Duplicate server display name"):
            await serve(config)

    async def test_serve_no_server_ready(self):
        with pytest.raises(ConfigurationError):
            await serve(_config(UNSTARTABLE))


class TestBindSocket:
    def test_ephemeral_port(self):
        sock = bind_socket("127.0.0.1", 0)
        try:
            assert sock.getsockname()[1] > 0
        finally:
            sock.close()

    def test_port_in_use(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        try:
            port = blocker.getsockname()[1]
            with pytest.raises(ConfigurationError, match=f"Cannot listen on 127.0.0.1:{port}"):
                bind_socket("127.0.0.1", port)
        finally:
            blocker.close()
