"""
MCP Aggregator - one Streamable HTTP endpoint for many stdio MCP servers.

Spawns each configured child server, namespaces its tools, prompts and
resources, and routes every call to the child that owns it. A crashed or
slow child only fails the calls addressed to it.
"""

from .catalog import CapabilityCatalog, CapabilityKind, CatalogSlice, NamespacedCapability
from .child import ChildChannel, ChildExited, StdioChild
from .config import AggregatorConfig, ServerDescriptor, load_aggregator_config
from .namespacing import Namespacing, PassthroughNamespacing, PrefixNamespacing, create_namespacing
from .registry import ChildSession, ServerRegistry, SessionState
from .router import RequestRouter
from .server import Aggregator, bind_socket, run_aggregator, serve
from .transport import SessionManager, create_http_app

__all__ = [
    # Config
    "AggregatorConfig",
    "ServerDescriptor",
    "load_aggregator_config",
    # Child processes
    "ChildChannel",
    "ChildExited",
    "StdioChild",
    # Registry
    "ChildSession",
    "ServerRegistry",
    "SessionState",
    # Namespacing and catalog
    "Namespacing",
    "PrefixNamespacing",
    "PassthroughNamespacing",
    "create_namespacing",
    "CapabilityCatalog",
    "CapabilityKind",
    "CatalogSlice",
    "NamespacedCapability",
    # Routing and transport
    "RequestRouter",
    "SessionManager",
    "create_http_app",
    # Server
    "Aggregator",
    "bind_socket",
    "run_aggregator",
    "serve",
]
