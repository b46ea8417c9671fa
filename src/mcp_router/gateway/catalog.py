"""
Capability Aggregator.

Keeps the merged, namespaced catalog of tools, resources, resource
templates and prompts. Each child owns one immutable CatalogSlice which
is replaced wholesale on refresh, so readers never see a half-updated
slice. Different children may be refreshed at different times.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from ..core.errors import AggregatorError
from ..core.observability import get_logger
from .namespacing import Namespacing, split_scheme
from .registry import ChildSession

logger = get_logger("mcp-router.catalog")

MAX_PAGES = 100


class CapabilityKind(StrEnum):
    """Catalog categories, valued by their key in MCP list results."""
    TOOLS = "tools"
    RESOURCES = "resources"
    RESOURCE_TEMPLATES = "resourceTemplates"
    PROMPTS = "prompts"


LIST_METHODS: dict[CapabilityKind, str] = {
    CapabilityKind.TOOLS: "tools/list",
    CapabilityKind.RESOURCES: "resources/list",
    CapabilityKind.RESOURCE_TEMPLATES: "resources/templates/list",
    CapabilityKind.PROMPTS: "prompts/list",
}

METHOD_KINDS: dict[str, CapabilityKind] = {method: kind for kind, method in LIST_METHODS.items()}

# Key in the child's initialize capabilities that advertises each kind
ADVERTISED_BY: dict[CapabilityKind, str] = {
    CapabilityKind.TOOLS: "tools",
    CapabilityKind.RESOURCES: "resources",
    CapabilityKind.RESOURCE_TEMPLATES: "resources",
    CapabilityKind.PROMPTS: "prompts",
}

LIST_CHANGED: dict[str, tuple[CapabilityKind, ...]] = {
    "notifications/tools/list_changed": (CapabilityKind.TOOLS,),
    "notifications/resources/list_changed": (CapabilityKind.RESOURCES, CapabilityKind.RESOURCE_TEMPLATES),
    "notifications/prompts/list_changed": (CapabilityKind.PROMPTS,),
}

# Field carrying the identifier for each kind
_KEY_FIELD: dict[CapabilityKind, str] = {
    CapabilityKind.TOOLS: "name",
    CapabilityKind.RESOURCES: "uri",
    CapabilityKind.RESOURCE_TEMPLATES: "uriTemplate",
    CapabilityKind.PROMPTS: "name",
}


@dataclass(frozen=True)
class NamespacedCapability:
    """One tool/resource/template/prompt as exposed externally."""
    kind: CapabilityKind
    external_name: str
    server_id: str
    local_name: str
    definition: dict[str, Any]


def _template_regex(template: str) -> re.Pattern[str]:
    """Compile the path part of a URI template (RFC 6570 expressions) to a regex."""
    parts: list[str] = []
    pos = 0
    for match in re.finditer(r"\{([^}]*)\}", template):
        parts.append(re.escape(template[pos:match.start()]))
        expr = match.group(1)
        if expr[:1] in ("+", "#") or expr.endswith("*"):
            parts.append(".*")
        else:
            parts.append("[^/]*")
        pos = match.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("".join(parts), re.DOTALL)


@dataclass(frozen=True)
class CatalogSlice:
    """Everything one child contributes to the merged catalog."""
    server_id: str
    tools: tuple[NamespacedCapability, ...] = ()
    resources: tuple[NamespacedCapability, ...] = ()
    resource_templates: tuple[NamespacedCapability, ...] = ()
    prompts: tuple[NamespacedCapability, ...] = ()
    _resource_index: dict[str, str] = field(default_factory=dict, compare=False, repr=False)
    _templates: tuple[tuple[re.Pattern[str], str | None], ...] = field(default=(), compare=False, repr=False)
    _schemes: frozenset[str] = field(default=frozenset(), compare=False, repr=False)

    _ATTRS = {
        CapabilityKind.TOOLS: "tools",
        CapabilityKind.RESOURCES: "resources",
        CapabilityKind.RESOURCE_TEMPLATES: "resource_templates",
        CapabilityKind.PROMPTS: "prompts",
    }

    def items(self, kind: CapabilityKind) -> tuple[NamespacedCapability, ...]:
        return getattr(self, self._ATTRS[kind])

    def with_items(self, updates: dict[CapabilityKind, tuple[NamespacedCapability, ...]]) -> CatalogSlice:
        """Return a new slice with some kinds replaced and indexes rebuilt."""
        updated = replace(self, **{self._ATTRS[k]: v for k, v in updates.items()})

        index = {c.external_name: c.local_name for c in updated.resources}
        templates = []
        schemes = set()
        for c in updated.resources:
            scheme, _ = split_scheme(c.local_name)
            if scheme:
                schemes.add(scheme)
        for c in updated.resource_templates:
            scheme, rest = split_scheme(c.local_name)
            if scheme:
                schemes.add(scheme)
            templates.append((_template_regex(rest), scheme))

        object.__setattr__(updated, "_resource_index", index)
        object.__setattr__(updated, "_templates", tuple(templates))
        object.__setattr__(updated, "_schemes", frozenset(schemes))
        return updated

    def local_uri(self, external_uri: str, path: str) -> str:
        """Map an external resource URI back to the child's own URI.

        Exact catalog entries win; then the child's resource templates;
        then, if the child only ever used one scheme, that scheme.
        """
        local = self._resource_index.get(external_uri)
        if local is not None:
            return local
        for pattern, scheme in self._templates:
            if pattern.fullmatch(path):
                return f"{scheme}://{path}" if scheme else path
        if len(self._schemes) == 1:
            (scheme,) = self._schemes
            return f"{scheme}://{path}"
        return path

    def counts(self) -> dict[str, int]:
        return {kind.value: len(self.items(kind)) for kind in CapabilityKind}


class CapabilityCatalog:
    """The merged catalog across all ready children."""

    def __init__(self, namespacing: Namespacing, *, request_timeout: float = 60.0) -> None:
        self._namespacing = namespacing
        self._request_timeout = request_timeout
        self._slices: dict[str, CatalogSlice] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def namespacing(self) -> Namespacing:
        return self._namespacing

    def slice_for(self, server_id: str) -> CatalogSlice:
        return self._slices.get(server_id) or CatalogSlice(server_id=server_id)

    async def refresh(self, session: ChildSession, kinds: tuple[CapabilityKind, ...] | None = None) -> CatalogSlice | None:
        """Re-list the given kinds (default: all) from one child and swap its slice.

        Returns:
            The installed slice, or None if the child stopped being ready.
        """
        server_id = session.server_id
        lock = self._locks.setdefault(server_id, asyncio.Lock())

        async with lock:
            fetched: dict[CapabilityKind, tuple[NamespacedCapability, ...]] = {}
            for kind in kinds or tuple(CapabilityKind):
                if ADVERTISED_BY[kind] not in session.capabilities:
                    fetched[kind] = ()
                    continue
                raw = await self._list_all(session, kind)
                fetched[kind] = self._namespace_items(server_id, kind, raw)

            if not session.is_ready:
                logger.info("Discarding refresh for server that is no longer ready", server=server_id)
                return None

            new_slice = self.slice_for(server_id).with_items(fetched)
            self._slices[server_id] = new_slice

        logger.info("Catalog refreshed", server=server_id, **new_slice.counts())
        return new_slice

    async def _list_all(self, session: ChildSession, kind: CapabilityKind) -> list[dict[str, Any]]:
        method = LIST_METHODS[kind]
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        seen_cursors: set[str] = set()

        for _ in range(MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            try:
                response = await session.request(method, params, timeout=self._request_timeout)
            except AggregatorError as e:
                logger.warning("Listing failed", server=session.server_id, method=method, error=e.message)
                return items

            if "error" in response:
                logger.warning(
                    "Child rejected listing",
                    server=session.server_id,
                    method=method,
                    error=response["error"],
                )
                return items

            result = response.get("result") or {}
            page = result.get(kind.value) or []
            items.extend(item for item in page if isinstance(item, dict))

            cursor = result.get("nextCursor")
            if not cursor or cursor in seen_cursors:
                break
            seen_cursors.add(cursor)

        return items

    def _namespace_items(
        self,
        server_id: str,
        kind: CapabilityKind,
        raw_items: list[dict[str, Any]],
    ) -> tuple[NamespacedCapability, ...]:
        key = _KEY_FIELD[kind]
        out: list[NamespacedCapability] = []
        seen: set[str] = set()

        for raw in raw_items:
            local = raw.get(key)
            if not isinstance(local, str) or not local:
                logger.warning("Skipping capability without identifier", server=server_id, kind=kind.value)
                continue

            if kind in (CapabilityKind.TOOLS, CapabilityKind.PROMPTS):
                external = self._namespacing.external_name(server_id, local)
            else:
                external = self._namespacing.external_uri(server_id, local)

            if external in seen:
                logger.warning(
                    "Skipping capability whose external name collides",
                    server=server_id,
                    kind=kind.value,
                    external=external,
                    local=local,
                )
                continue
            seen.add(external)

            out.append(
                NamespacedCapability(
                    kind=kind,
                    external_name=external,
                    server_id=server_id,
                    local_name=local,
                    definition={**raw, key: external},
                )
            )
        return tuple(out)

    def remove(self, server_id: str) -> None:
        """Drop a child's slice (on crash or shutdown)."""
        if self._slices.pop(server_id, None) is not None:
            logger.info("Catalog entries removed", server=server_id)

    def merged(self) -> dict[str, list[dict[str, Any]]]:
        """The full external catalog, children in configuration order."""
        return {kind.value: self.list_items(kind) for kind in CapabilityKind}

    def list_items(self, kind: CapabilityKind) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for server_id in self._namespacing.server_ids:
            catalog_slice = self._slices.get(server_id)
            if catalog_slice is not None:
                items.extend(dict(c.definition) for c in catalog_slice.items(kind))
        return items

    def counts(self) -> dict[str, dict[str, int]]:
        return {server_id: s.counts() for server_id, s in self._slices.items()}
