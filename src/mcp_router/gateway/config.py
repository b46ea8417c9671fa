"""
Aggregator Configuration.

Defines the configuration models for the aggregation server and the child
MCP servers it launches. Configuration is assembled from CLI flags, the
environment and an optional JSON file.

Environment Variables:
- MCPR_CONFIG: Path to a JSON configuration file
- MCPR_HOST: Listen address (default: 0.0.0.0)
- MCPR_PORT: Listen port (default: 3283)
- MCPR_PATH: MCP endpoint path (default: /)
- MCPR_LOG_LEVEL: Log level (default: INFO)
- MCPR_STARTUP_TIMEOUT: Seconds allowed for a child's initialize handshake
- MCPR_REQUEST_TIMEOUT: Seconds allowed for a forwarded call
"""
from __future__ import annotations

import json
import os
from collections import Counter
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import ConfigurationError

NAME_SEPARATOR = "__"


class ServerDescriptor(BaseModel):
    """One configured child MCP server. Immutable once the aggregator starts."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="forbid",
        frozen=True,
    )

    id: str = Field(
        ...,
        description="Stable short identifier, used as the tool/prompt namespace prefix",
        min_length=1,
        max_length=64,
    )
    display_name: str = Field(
        ...,
        description="Human-readable name, used as the authority of resource:// URIs",
        min_length=1,
    )
    command: str = Field(
        ...,
        description="Executable that launches the child server",
        min_length=1,
    )
    args: tuple[str, ...] = Field(
        default=(),
        description="Command arguments",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Environment variables merged over the aggregator's own",
    )
    cwd: str | None = Field(
        default=None,
        description="Working directory for the child process",
    )

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """The id must survive a split on the namespace separator."""
        if NAME_SEPARATOR in v:
            msg = f"Server id '{v}' must not contain '{NAME_SEPARATOR}'"
            raise ValueError(msg)
        if any(c.isspace() for c in v):
            msg = f"Server id '{v}' must not contain whitespace"
            raise ValueError(msg)
        return v

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        if "/" in v:
            msg = f"Display name '{v}' must not contain '/'"
            raise ValueError(msg)
        return v

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def to_env_dict(self) -> dict[str, str]:
        """Environment for the child: inherited environment plus overrides."""
        return {**os.environ, **self.env}


class AggregatorConfig(BaseModel):
    """Top-level configuration for the aggregation server."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="forbid",
    )

    name: str = Field(
        default="mcp-router-aggregator",
        description="Server name reported to clients",
    )
    version: str = Field(
        default="0.1.0",
        description="Server version reported to clients",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Listen address",
    )
    port: int = Field(
        default=3283,
        description="Listen port",
        ge=0,
        le=65535,
    )
    path: str = Field(
        default="/",
        description="MCP endpoint path",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of console output",
    )
    verbose: bool = Field(
        default=False,
        description="Shortcut for DEBUG logging",
    )
    namespace: bool | None = Field(
        default=None,
        description=(
            "Prefix tool/prompt names and rewrite resource URIs. "
            "None means automatic: on for several servers, off for one."
        ),
    )

    # Timeouts
    startup_timeout: float = Field(
        default=30.0,
        description="Seconds allowed for a child's initialize handshake",
        gt=0,
    )
    request_timeout: float = Field(
        default=60.0,
        description="Seconds allowed for one forwarded call",
        gt=0,
    )
    shutdown_grace: float = Field(
        default=5.0,
        description="Seconds a child gets to exit after SIGTERM before SIGKILL",
        ge=0,
    )
    keepalive_interval: float = Field(
        default=15.0,
        description="Seconds between SSE keepalive comments",
        gt=0,
    )

    servers: list[ServerDescriptor] = Field(
        default_factory=list,
        description="Child MCP servers to aggregate",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            v = "/" + v
        return v

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.verbose else self.log_level.upper()

    @property
    def namespacing_enabled(self) -> bool:
        if self.namespace is not None:
            return self.namespace
        return len(self.servers) != 1

    def validate_servers(self) -> None:
        """Fail fast on server lists that cannot be served.

        Raises:
            ConfigurationError: No servers, or duplicate ids/display names.
        """
        if not self.servers:
            msg = "No servers configured"
            raise ConfigurationError(msg)

        ids = Counter(s.id for s in self.servers)
        dup_ids = sorted(k for k, n in ids.items() if n > 1)
        if dup_ids:
            msg = f"Duplicate server id(s): {', '.join(dup_ids)}"
            raise ConfigurationError(msg, data={"ids": dup_ids})

        names = Counter(s.display_name for s in self.servers)
        dup_names = sorted(k for k, n in names.items() if n > 1)
        if dup_names:
            msg = f"Duplicate server display name(s): {', '.join(dup_names)}"
            raise ConfigurationError(msg, data={"display_names": dup_names})


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if os.getenv("MCPR_HOST"):
        overrides["host"] = os.getenv("MCPR_HOST")
    if os.getenv("MCPR_PORT"):
        overrides["port"] = os.getenv("MCPR_PORT")
    if os.getenv("MCPR_PATH"):
        overrides["path"] = os.getenv("MCPR_PATH")
    if os.getenv("MCPR_LOG_LEVEL"):
        overrides["log_level"] = os.getenv("MCPR_LOG_LEVEL")
    if os.getenv("MCPR_STARTUP_TIMEOUT"):
        overrides["startup_timeout"] = os.getenv("MCPR_STARTUP_TIMEOUT")
    if os.getenv("MCPR_REQUEST_TIMEOUT"):
        overrides["request_timeout"] = os.getenv("MCPR_REQUEST_TIMEOUT")
    return overrides


def load_aggregator_config(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> AggregatorConfig:
    """Load configuration from file, environment and explicit overrides.

    Priority (highest to lowest):
    1. overrides (CLI flags)
    2. Environment variables
    3. Config file (config_path / MCPR_CONFIG)
    4. Built-in defaults

    Servers given in overrides replace the file's server list; they are
    not merged, so a command line always describes the full set.

    Raises:
        ConfigurationError: The file is unreadable or a value is invalid.
    """
    load_dotenv()

    path = config_path or os.getenv("MCPR_CONFIG")
    file_data: dict[str, Any] = {}

    if path:
        config_file = Path(path).expanduser()
        if not config_file.exists():
            msg = f"Config file not found: {config_file}"
            raise ConfigurationError(msg)
        try:
            file_data = json.loads(config_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            msg = f"Cannot read config file {config_file}: {e}"
            raise ConfigurationError(msg) from e

    merged = {**file_data, **_env_overrides(), **(overrides or {})}

    try:
        return AggregatorConfig(**merged)
    except ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ConfigurationError(msg) from e
