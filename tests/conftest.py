"""
Pytest configuration and shared fixtures for the aggregator tests.
"""
from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from fakes import FakeFleet, FakeServer
from mcp_router.gateway.config import AggregatorConfig, ServerDescriptor
from mcp_router.gateway.server import Aggregator


@pytest.fixture
def fleet() -> FakeFleet:
    """Empty fleet; tests add FakeServer behaviour per server id."""
    return FakeFleet()


@pytest.fixture
def fs_server() -> FakeServer:
    """A filesystem-like server with tools, resources, a template and a prompt."""
    return FakeServer(
        tools=[
            {"name": "readFile", "description": "Read a file", "inputSchema": {"type": "object"}},
            {"name": "writeFile", "description": "Write a file", "inputSchema": {"type": "object"}},
        ],
        resources=[
            {"uri": "file:///tmp/x", "name": "x", "mimeType": "text/plain"},
        ],
        resource_templates=[
            {"uriTemplate": "file:///logs/{name}", "name": "logs"},
        ],
        prompts=[
            {"name": "summarize", "description": "Summarize a file"},
        ],
    )


@pytest.fixture
def git_server() -> FakeServer:
    """A second server whose tool names overlap the first one's."""
    return FakeServer(
        tools=[
            {"name": "readFile", "description": "Read a file at a revision", "inputSchema": {"type": "object"}},
            {"name": "log", "description": "Show history", "inputSchema": {"type": "object"}},
        ],
        resources=[
            {"uri": "git://repo/HEAD", "name": "HEAD"},
        ],
    )


AggregatorFactory = Callable[..., Any]


@pytest.fixture
async def make_aggregator(fleet: FakeFleet) -> AsyncIterator[AggregatorFactory]:
    """Build and start an Aggregator over the fake fleet; stopped after the test."""
    started: list[Aggregator] = []

    async def factory(*descriptors: ServerDescriptor, start: bool = True, **config: Any) -> Aggregator:
        config.setdefault("request_timeout", 2.0)
        config.setdefault("startup_timeout", 2.0)
        config.setdefault("shutdown_grace", 0.5)
        aggregator = Aggregator(
            AggregatorConfig(servers=list(descriptors), **config),
            channel_factory=fleet.factory,
        )
        started.append(aggregator)
        if start:
            await aggregator.start()
        return aggregator

    yield factory

    for aggregator in started:
        await aggregator.stop()
