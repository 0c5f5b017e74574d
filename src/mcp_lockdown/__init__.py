"""mcp-lockdown: a trust boundary for MCP tool descriptors.

Verifies signed tool manifests against a locally pinned registry and
runs tool metadata through an ordered policy chain.  The lockdown proxy
(``mcp_lockdown.aggregator``) republishes only the tools that pass.
"""

from .version import __version__
from .errors import (
    LockdownError,
    InvalidJson,
    MalformedManifest,
    InvalidRegistry,
    UnknownTool,
    InvalidSignature,
    HashMismatch,
    SchemaMismatch,
    PolicyVeto,
    UnsupportedConnectionType,
)
from .models import Tool, Manifest, Registry, RegistryEntry, LockdownConfig
from .manifest import load_manifest, load_registry, validate_manifest
from .policy import PolicyEngine
from .rules import builtin_policies, default_engine
from .schema import build_schema, schemas_equivalent

__all__ = [
    "__version__",
    "LockdownError",
    "InvalidJson",
    "MalformedManifest",
    "InvalidRegistry",
    "UnknownTool",
    "InvalidSignature",
    "HashMismatch",
    "SchemaMismatch",
    "PolicyVeto",
    "UnsupportedConnectionType",
    "Tool",
    "Manifest",
    "Registry",
    "RegistryEntry",
    "LockdownConfig",
    "load_manifest",
    "load_registry",
    "validate_manifest",
    "PolicyEngine",
    "builtin_policies",
    "default_engine",
    "build_schema",
    "schemas_equivalent",
]
