"""
Structured logging for the aggregation server.

All output goes to stderr. Children speak JSON-RPC on their own stdout,
and keeping the aggregator's stdout quiet lets it be wrapped by stdio
tooling as well.
"""
from __future__ import annotations

import logging
import sys
from time import perf_counter

import structlog

_start_time: float = perf_counter()


def get_uptime_seconds() -> float:
    """Get aggregator uptime in seconds."""
    return perf_counter() - _start_time


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structlog and stdlib logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; otherwise console format
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # uvicorn and asyncio log through the stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )


def get_logger(name: str = "mcp-router") -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
