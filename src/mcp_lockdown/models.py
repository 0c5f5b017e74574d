"""Data model for tools, manifests, registries and downstream connections.

Wire documents use camelCase keys (``inputSchema``, ``handlerHash``,
``publicKey``).  The dataclasses here use snake_case attributes and keep
the parsed wire dicts alongside, because manifest signatures are computed
over the exact wire representation and must be verified against it.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


# ---------------------------------------------------------------------------
# Tools, manifests, registries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Tool:
    """A named, schema-typed capability advertised by a server.

    ``input_schema`` holds the plain JSON-schema-like description as
    received.  During manifest validation it may be *replaced* (never
    mutated) by a built ``SchemaValue`` via ``dataclasses.replace``.
    """
    name: str
    description: str = ""
    input_schema: Any = None
    handler_hash: str | None = None
    public_key: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tool:
        return cls(
            name=str(data.get("name", "")),
            description=data.get("description") or "",
            input_schema=data.get("inputSchema"),
            handler_hash=data.get("handlerHash"),
            public_key=data.get("publicKey"),
            raw=data,
        )


@dataclass
class Manifest:
    """A signed declaration of a server's tool set.

    ``raw_tools`` is a private deep copy of the ``tools`` array exactly as
    parsed.  It is the payload the signature covers and nothing in this
    package writes to it.
    """
    signature: str
    tools: list[Tool]
    raw_tools: list[Any]
    schema_version: str = ""
    name_for_human: str = ""
    name_for_model: str = ""
    description: str = ""
    version: str = ""
    metadata: dict[str, Any] | None = None
    signing_key_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        raw_tools = copy.deepcopy(data["tools"])
        return cls(
            signature=str(data.get("signature", "")),
            tools=[
                Tool.from_dict(t) for t in data["tools"] if isinstance(t, dict)
            ],
            raw_tools=raw_tools,
            schema_version=str(data.get("schemaVersion", "")),
            name_for_human=str(data.get("nameForHuman", "")),
            name_for_model=str(data.get("nameForModel", "")),
            description=str(data.get("description", "")),
            version=str(data.get("version", "")),
            metadata=data.get("metadata"),
            signing_key_id=data.get("signingKeyId"),
        )


@dataclass(frozen=True)
class RegistryEntry:
    """Pinned ground truth for a single trusted tool."""
    name: str
    description: str = ""
    handler_hash: str = ""
    public_key: str = ""
    input_schema: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryEntry:
        return cls(
            name=str(data.get("name", "")),
            description=data.get("description") or "",
            handler_hash=data.get("handlerHash") or "",
            public_key=data.get("publicKey") or "",
            input_schema=data.get("inputSchema"),
        )


@dataclass
class Registry:
    """The locally trusted set of expected tool identities.

    ``tools`` is left as ``None`` when the source document has no usable
    ``tools`` array; ``validate_manifest`` rejects such a registry.
    """
    tools: list[RegistryEntry] | None
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Registry:
        raw_tools = data.get("tools")
        tools = None
        if isinstance(raw_tools, list):
            tools = [
                RegistryEntry.from_dict(t) for t in raw_tools
                if isinstance(t, dict)
            ]
        return cls(tools=tools, metadata=data.get("metadata"))

    def get(self, name: str) -> RegistryEntry | None:
        """Exact-name lookup.  Returns ``None`` when the tool is not pinned."""
        for entry in self.tools or []:
            if entry.name == name:
                return entry
        return None


# ---------------------------------------------------------------------------
# Downstream connections
# ---------------------------------------------------------------------------

_DEFAULT_CONNECT_TIMEOUT = 30.0


@dataclass
class StdioConnection:
    """A downstream MCP server spawned as a child process."""
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    timeout: float = _DEFAULT_CONNECT_TIMEOUT

    type = "stdio"


@dataclass
class HttpConnection:
    """A remote MCP server.  Accepted in config but not yet connected."""
    name: str
    url: str
    request_init: dict[str, Any] | None = None
    timeout: float = _DEFAULT_CONNECT_TIMEOUT

    type = "http"


ServerConnection = Union[StdioConnection, HttpConnection]


@dataclass
class LockdownConfig:
    """Declarative input to the aggregator: connection name -> server."""
    servers: dict[str, ServerConnection] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Policy rejections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyRejection:
    """One veto recorded by a ``PolicyEngine``."""
    tool_name: str
    rule_name: str
    kind: str = "policy"  # policy | shield
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )

    @property
    def message(self) -> str:
        if self.kind == "shield":
            return f"prompt shield veto: {self.tool_name}"
        return f"policy veto: {self.tool_name} ({self.rule_name})"
