"""
MCP Aggregation Server.

Spawns every configured child MCP server over stdio and exposes them all
through one Streamable HTTP endpoint.

Architecture:
    Client --> [POST/GET :3283/] --> RequestRouter --> ChildSession "fs"  (stdio)
                                                   --> ChildSession "git" (stdio)

Startup order:
1. Validate the server list (duplicate names are fatal before binding)
2. Bind the listen socket (a port in use is fatal)
3. Start all children concurrently; at least one must become ready
4. Serve until SIGINT/SIGTERM, then stop every child
"""
from __future__ import annotations

import asyncio
import signal
import socket
from collections.abc import Callable
from types import FrameType

import structlog
import uvicorn

from ..core.errors import ConfigurationError
from .catalog import CapabilityCatalog
from .child import ChannelFactory, StdioChild
from .config import AggregatorConfig, load_aggregator_config
from .namespacing import create_namespacing
from .registry import ServerRegistry
from .router import RequestRouter
from .transport import SessionManager, create_http_app

logger = structlog.get_logger("mcp-router.server")


class Aggregator:
    """Composition root wiring registry, catalog, router and transport."""

    def __init__(self, config: AggregatorConfig, *, channel_factory: ChannelFactory = StdioChild) -> None:
        self.config = config
        self.namespacing = create_namespacing(config.servers, prefixed=config.namespacing_enabled)
        self.registry = ServerRegistry(
            channel_factory=channel_factory,
            startup_timeout=config.startup_timeout,
            shutdown_grace=config.shutdown_grace,
        )
        self.catalog = CapabilityCatalog(self.namespacing, request_timeout=config.request_timeout)
        self.router = RequestRouter(
            self.registry,
            self.catalog,
            request_timeout=config.request_timeout,
            server_name=config.name,
            server_version=config.version,
        )
        self.sessions = SessionManager(keepalive_interval=config.keepalive_interval)

        self.router.add_publisher(self.sessions.publish)
        self.registry.add_ready_listener(self.router.on_child_ready)
        self.registry.add_exit_listener(self.router.on_child_exit)
        self.registry.add_notification_listener(self.router.on_child_notification)

        self.app = create_http_app(
            self.router,
            self.registry,
            self.catalog,
            self.sessions,
            path=config.path,
            title=config.name,
            version=config.version,
        )

    async def start(self) -> dict[str, bool]:
        """Start all children.

        Raises:
            ConfigurationError: No child became ready.
        """
        results = await self.registry.start_all(self.config.servers)
        ready = [server_id for server_id, ok in results.items() if ok]
        failed = [server_id for server_id, ok in results.items() if not ok]

        logger.info(
            "Servers started",
            ready=len(ready),
            total=len(results),
            failed=failed or None,
            namespaced=self.namespacing.prefixed,
        )

        if not ready:
            msg = "No server could be started"
            raise ConfigurationError(msg, data={"failed": failed})
        return results

    async def stop(self) -> None:
        logger.info("Shutting down aggregator")
        self.sessions.close_all()
        await self.registry.stop_all()


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listen socket up front so a busy port fails before any child starts.

    Raises:
        ConfigurationError: The address cannot be bound.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        msg = f"Cannot listen on {host}:{port}: {e.strerror or e}"
        raise ConfigurationError(msg) from e
    return sock


class _AggregatorServer(uvicorn.Server):
    """uvicorn server whose signals end serve() instead of being re-raised.

    serve() then returns normally so children are stopped before exit.
    """

    def __init__(self, config: uvicorn.Config, on_exit: Callable[[], None]) -> None:
        super().__init__(config)
        self._on_exit = on_exit
        self._loop = asyncio.get_running_loop()

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        if self.should_exit and sig == signal.SIGINT:
            self.force_exit = True
        else:
            self.should_exit = True
        logger.info("Shutdown signal received", signal=signal.Signals(sig).name)
        # Open SSE streams would otherwise hold the graceful shutdown open
        self._loop.call_soon_threadsafe(self._on_exit)


async def serve(config: AggregatorConfig, *, channel_factory: ChannelFactory = StdioChild) -> None:
    """Run the aggregator until a shutdown signal.

    Raises:
        ConfigurationError: Invalid server list, busy port, or no child ready.
    """
    config.validate_servers()
    sock = bind_socket(config.host, config.port)
    aggregator = Aggregator(config, channel_factory=channel_factory)

    try:
        await aggregator.start()

        uv_config = uvicorn.Config(
            aggregator.app,
            log_config=None,
            access_log=config.effective_log_level == "DEBUG",
            lifespan="off",
            timeout_graceful_shutdown=config.shutdown_grace,
        )
        server = _AggregatorServer(uv_config, on_exit=aggregator.sessions.close_all)

        logger.info(
            "Aggregator listening",
            host=config.host,
            port=sock.getsockname()[1],
            path=config.path,
            servers=list(aggregator.registry.ready_sessions),
        )
        await server.serve(sockets=[sock])
    finally:
        await aggregator.stop()
        sock.close()


def run_aggregator(config: AggregatorConfig | None = None) -> None:
    """Create and run the aggregation server.

    Args:
        config: Aggregator configuration. If None, loads from file/environment.
    """
    if config is None:
        config = load_aggregator_config()
    asyncio.run(serve(config))
