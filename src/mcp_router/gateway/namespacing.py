"""
Namespace translation between the aggregator's external names and each
child's local names.

Tools and prompts are exposed as ``<serverId>__<localName>``; resources
as ``resource://<displayName>/<path>`` where path is the child's URI with
its ``scheme://`` stripped. The scheme is restored on the way back in
from the catalog (see CatalogSlice.local_uri).

Two strategies share one interface: PrefixNamespacing for several
servers and PassthroughNamespacing for a single server whose names are
exposed unchanged.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..core.errors import InvalidTarget
from .config import NAME_SEPARATOR, ServerDescriptor

RESOURCE_SCHEME = "resource"

_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*)://(.+)$", re.DOTALL)
_EXTERNAL_URI_RE = re.compile(r"^resource://([^/]+)/(.*)$", re.DOTALL)


def qualify_name(server_id: str, local_name: str) -> str:
    return f"{server_id}{NAME_SEPARATOR}{local_name}"


def split_name(external_name: str) -> tuple[str, str]:
    """Split on the first separator into (server_id, local_name).

    Raises:
        InvalidTarget: No separator, or an empty half.
    """
    server_id, sep, local_name = external_name.partition(NAME_SEPARATOR)
    if not sep:
        raise InvalidTarget(external_name, f"missing '{NAME_SEPARATOR}' server prefix")
    if not server_id or not local_name:
        raise InvalidTarget(external_name, "empty server prefix or name")
    return server_id, local_name


def split_scheme(uri: str) -> tuple[str | None, str]:
    """Return (scheme, rest) for ``scheme://rest``, else (None, uri)."""
    match = _SCHEME_RE.match(uri)
    if match:
        return match.group(1), match.group(2)
    return None, uri


def qualify_uri(display_name: str, local_uri: str) -> str:
    _, path = split_scheme(local_uri)
    return f"{RESOURCE_SCHEME}://{display_name}/{path}"


def split_uri(external_uri: str) -> tuple[str, str]:
    """Split ``resource://<displayName>/<path>`` into (display_name, path).

    Raises:
        InvalidTarget: Wrong scheme or no display name.
    """
    match = _EXTERNAL_URI_RE.match(external_uri)
    if not match:
        raise InvalidTarget(external_uri, "expected resource://<server>/<path>")
    return match.group(1), match.group(2)


@dataclass(frozen=True)
class UriTarget:
    """Where an external resource URI points."""
    server_id: str
    path: str
    verbatim: bool = False  # path is already the child's own URI


class Namespacing(ABC):
    """Translation strategy shared by the catalog and the router."""

    prefixed: bool = True

    def __init__(self, descriptors: Iterable[ServerDescriptor]) -> None:
        self._by_id = {d.id: d for d in descriptors}

    @property
    def server_ids(self) -> list[str]:
        return list(self._by_id)

    @abstractmethod
    def external_name(self, server_id: str, local_name: str) -> str:
        ...

    @abstractmethod
    def resolve_name(self, external_name: str) -> tuple[str, str]:
        ...

    @abstractmethod
    def external_uri(self, server_id: str, local_uri: str) -> str:
        ...

    @abstractmethod
    def resolve_uri(self, external_uri: str) -> UriTarget:
        ...

    def externalize_payload(self, server_id: str, payload: Any) -> Any:
        """Rewrite child-local resource URIs in a result to external form."""
        return rewrite_resource_uris(payload, lambda uri: self.external_uri(server_id, uri))


class PrefixNamespacing(Namespacing):
    """``serverId__name`` and ``resource://displayName/path`` for every child."""

    prefixed = True

    def __init__(self, descriptors: Iterable[ServerDescriptor]) -> None:
        super().__init__(descriptors)
        self._id_by_display_name = {d.display_name: d.id for d in self._by_id.values()}

    def external_name(self, server_id: str, local_name: str) -> str:
        return qualify_name(server_id, local_name)

    def resolve_name(self, external_name: str) -> tuple[str, str]:
        server_id, local_name = split_name(external_name)
        if server_id not in self._by_id:
            raise InvalidTarget(external_name, f"unknown server '{server_id}'")
        return server_id, local_name

    def external_uri(self, server_id: str, local_uri: str) -> str:
        return qualify_uri(self._by_id[server_id].display_name, local_uri)

    def resolve_uri(self, external_uri: str) -> UriTarget:
        display_name, path = split_uri(external_uri)
        server_id = self._id_by_display_name.get(display_name)
        if server_id is None:
            raise InvalidTarget(external_uri, f"unknown server '{display_name}'")
        return UriTarget(server_id=server_id, path=path)


class PassthroughNamespacing(Namespacing):
    """A single child whose names and URIs are exposed unchanged."""

    prefixed = False

    def __init__(self, descriptor: ServerDescriptor) -> None:
        super().__init__([descriptor])
        self._server_id = descriptor.id

    def external_name(self, server_id: str, local_name: str) -> str:
        return local_name

    def resolve_name(self, external_name: str) -> tuple[str, str]:
        if not external_name:
            raise InvalidTarget(external_name, "empty name")
        return self._server_id, external_name

    def external_uri(self, server_id: str, local_uri: str) -> str:
        return local_uri

    def resolve_uri(self, external_uri: str) -> UriTarget:
        if not external_uri:
            raise InvalidTarget(external_uri, "empty URI")
        return UriTarget(server_id=self._server_id, path=external_uri, verbatim=True)

    def externalize_payload(self, server_id: str, payload: Any) -> Any:
        return payload


def create_namespacing(descriptors: list[ServerDescriptor], *, prefixed: bool) -> Namespacing:
    if prefixed or len(descriptors) != 1:
        return PrefixNamespacing(descriptors)
    return PassthroughNamespacing(descriptors[0])


def _rewrite_block(block: Any, rewrite: Callable[[str], str]) -> Any:
    if not isinstance(block, dict):
        return block
    kind = block.get("type")
    if kind == "resource" and isinstance(block.get("resource"), dict):
        resource = block["resource"]
        if isinstance(resource.get("uri"), str):
            return {**block, "resource": {**resource, "uri": rewrite(resource["uri"])}}
    if kind == "resource_link" and isinstance(block.get("uri"), str):
        return {**block, "uri": rewrite(block["uri"])}
    return block


def rewrite_resource_uris(payload: Any, rewrite: Callable[[str], str]) -> Any:
    """Return a copy of an MCP result with resource URIs rewritten.

    Handles the shapes that carry child URIs: resources/read ``contents``,
    tool ``content`` blocks (embedded resources and resource links), and
    prompt ``messages``. Everything else is returned untouched.
    """
    if not isinstance(payload, dict):
        return payload

    out = dict(payload)
    contents = payload.get("contents")
    if isinstance(contents, list):
        out["contents"] = [
            {**c, "uri": rewrite(c["uri"])} if isinstance(c, dict) and isinstance(c.get("uri"), str) else c
            for c in contents
        ]

    content = payload.get("content")
    if isinstance(content, list):
        out["content"] = [_rewrite_block(b, rewrite) for b in content]

    messages = payload.get("messages")
    if isinstance(messages, list):
        out["messages"] = [
            {**m, "content": _rewrite_block(m["content"], rewrite)} if isinstance(m, dict) and "content" in m else m
            for m in messages
        ]

    return out
