"""
MCP Aggregator - Module Entry Point.

Allows running the aggregator as a Python module:
    python -m mcp_router.gateway serve --port 3283 -- npx -y @modelcontextprotocol/server-everything
    python -m mcp_router.gateway serve --server fs Files npx -y @modelcontextprotocol/server-filesystem /tmp \\
                                       --server git Git uvx mcp-server-git
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import structlog

from ..core.errors import ConfigurationError
from ..core.observability import configure_logging
from .config import load_aggregator_config
from .server import run_aggregator

logger = structlog.get_logger("mcp-router.cli")

SERVER_FLAG = "--server"
DEFAULT_SERVER_ID = "default"

# Options that take a value; everything else in the option prefix is a flag
_VALUE_OPTIONS = frozenset({
    "--config", "-c",
    "--host",
    "--port", "-p",
    "--path",
    "--log-level",
    "--startup-timeout",
    "--request-timeout",
    "--shutdown-grace",
})

EPILOG = """
Examples:
  # Proxy a single server, names passed through unchanged
  mcpr serve --port 3283 -- node ./echo-server.js
  mcpr serve node ./echo-server.js

  # Aggregate several servers; tools become fs__readFile, git__log, ...
  mcpr serve --port 3283 \\
      --server fs Files npx -y @modelcontextprotocol/server-filesystem /tmp \\
      --server git Git uvx mcp-server-git

  # Servers from a config file, verbose logging
  mcpr serve --config aggregator.json -v

Everything after the first --server (or --, or the first non-option word)
belongs to server commands; --server consumes words until the next --server.
"""


def split_serve_argv(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split serve arguments into the aggregator's options and the server part."""
    i = 0
    while i < len(argv):
        token = argv[i]
        if token in (SERVER_FLAG, "--") or not token.startswith("-"):
            break
        i += 1
        if token in _VALUE_OPTIONS and i < len(argv):
            i += 1
    return argv[:i], argv[i:]


def parse_server_groups(tokens: list[str]) -> list[dict[str, Any]]:
    """Turn the server part of the command line into server definitions.

    Accepts repeated ``--server ID NAME COMMAND [ARGS...]`` groups, or one
    bare command (optionally after ``--``) which becomes the implicit
    server ``default``.

    Raises:
        ValueError: A --server group is incomplete or the command is missing.
    """
    if not tokens:
        return []

    if tokens[0] != SERVER_FLAG:
        if tokens[0] == "--":
            tokens = tokens[1:]
        if not tokens:
            msg = "expected a server command after '--'"
            raise ValueError(msg)
        command, *args = tokens
        return [{
            "id": DEFAULT_SERVER_ID,
            "display_name": Path(command).name or DEFAULT_SERVER_ID,
            "command": command,
            "args": args,
        }]

    groups: list[list[str]] = []
    for token in tokens:
        if token == SERVER_FLAG:
            groups.append([])
        else:
            groups[-1].append(token)

    servers = []
    for group in groups:
        if len(group) < 3:
            msg = f"{SERVER_FLAG} needs ID NAME COMMAND [ARGS...], got: {' '.join(group) or 'nothing'}"
            raise ValueError(msg)
        server_id, name, command, *args = group
        servers.append({"id": server_id, "display_name": name, "command": command, "args": args})
    return servers


def build_parser() -> tuple[argparse.ArgumentParser, argparse.ArgumentParser]:
    parser = argparse.ArgumentParser(
        prog="mcpr",
        description="MCP Router - aggregate stdio MCP servers behind one Streamable HTTP endpoint",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser(
        "serve",
        usage=(
            "mcpr serve [options] (--server ID NAME COMMAND [ARGS...])...\n"
            "       mcpr serve [options] [--] COMMAND [ARGS...]"
        ),
        help="Start the aggregation server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )

    # -- Core options --
    serve.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to a JSON configuration file (may list servers)",
    )
    serve.add_argument(
        "--host",
        type=str,
        default=None,
        help="Listen address (default: 0.0.0.0)",
    )
    serve.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Listen port (default: 3283)",
    )
    serve.add_argument(
        "--path",
        type=str,
        default=None,
        help="MCP endpoint path (default: /)",
    )
    serve.add_argument(
        "--namespace",
        action="store_true",
        default=None,
        help="Prefix names even when proxying a single server",
    )

    # -- Timeouts --
    serve.add_argument(
        "--startup-timeout",
        type=float,
        default=None,
        help="Seconds allowed for each server's initialize handshake (default: 30)",
    )
    serve.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help="Seconds allowed for one forwarded call (default: 60)",
    )
    serve.add_argument(
        "--shutdown-grace",
        type=float,
        default=None,
        help="Seconds a server gets to exit before it is killed (default: 5)",
    )

    # -- Logging --
    serve.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=None,
        help="Debug logging, including child stderr",
    )
    serve.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    serve.add_argument(
        "--log-json",
        action="store_true",
        default=None,
        help="Write logs as JSON lines",
    )

    return parser, serve


def _overrides(args: argparse.Namespace, servers: list[dict[str, Any]]) -> dict[str, Any]:
    names = (
        "host", "port", "path", "namespace", "verbose", "log_level", "log_json",
        "startup_timeout", "request_timeout", "shutdown_grace",
    )
    overrides = {name: getattr(args, name) for name in names if getattr(args, name) is not None}
    if servers:
        overrides["servers"] = servers
    return overrides


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the aggregator.

    Returns:
        0 on normal shutdown, 1 on a configuration error.
        Usage errors exit with status 2 through argparse.
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    parser, serve_parser = build_parser()

    if not argv or argv[0] != "serve":
        parser.parse_args(argv)
        return 2

    options, server_tokens = split_serve_argv(argv[1:])
    args = serve_parser.parse_args(options)
    try:
        servers = parse_server_groups(server_tokens)
    except ValueError as e:
        serve_parser.error(str(e))

    configure_logging("DEBUG" if args.verbose else (args.log_level or "INFO"), bool(args.log_json))

    try:
        config = load_aggregator_config(args.config, _overrides(args, servers))
        configure_logging(config.effective_log_level, config.log_json)
        run_aggregator(config)
    except ConfigurationError as e:
        logger.error("Configuration error", error=e.message, **e.data)
        return 1
    except KeyboardInterrupt:
        return 0

    logger.info("Aggregator stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
