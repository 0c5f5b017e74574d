"""Error taxonomy for manifest validation and the lockdown proxy.

Every error here is deterministic and caused by data.  The CLI maps
each class to a process exit code via ``exit_code``:

  1 = I/O or usage error (reserved, not raised from this module)
  2 = malformed input (bad JSON, bad manifest/registry shape)
  3 = trust failure (unknown tool, signature, hash, schema)
  4 = policy veto
"""

from __future__ import annotations


class LockdownError(Exception):
    """Base error for all manifest and policy failures."""

    exit_code = 1

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


# ---------------------------------------------------------------------------
# Malformed input
# ---------------------------------------------------------------------------

class InvalidJson(LockdownError):
    """A manifest or registry file could not be parsed as JSON."""

    exit_code = 2


class MalformedManifest(LockdownError):
    """Manifest is missing its ``tools`` array or its ``signature``."""

    exit_code = 2


class InvalidRegistry(LockdownError):
    """Registry is missing its ``tools`` array."""

    exit_code = 2


# ---------------------------------------------------------------------------
# Trust failures
# ---------------------------------------------------------------------------

class UnknownTool(LockdownError):
    """A manifest tool has no entry in the pinned registry."""

    exit_code = 3


class InvalidSignature(LockdownError):
    """The manifest signature does not verify against the pinned key."""

    exit_code = 3


class HashMismatch(LockdownError):
    """A tool's ``handlerHash`` differs from the pinned hash."""

    exit_code = 3


class SchemaMismatch(LockdownError):
    """A tool's input schema is not equivalent to the pinned schema."""

    exit_code = 3


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class PolicyVeto(LockdownError):
    """A policy rule or prompt shield rejected a tool."""

    exit_code = 4

    def __init__(
        self,
        message: str,
        *,
        tool_name: str | None = None,
        rule_name: str | None = None,
    ) -> None:
        super().__init__(message, tool_name=tool_name)
        self.rule_name = rule_name


class UnsupportedConnectionType(LockdownError):
    """A downstream server uses a connection type the proxy cannot open."""

    exit_code = 1
