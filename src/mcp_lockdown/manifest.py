"""Signed manifest loading and the all-or-nothing validation pipeline.

``validate_manifest`` runs a fixed sequence and stops at the first
failure:

1. registry shape
2. signing key selection (first tool's pinned key, or the manifest's
   ``signingKeyId``)
3. signature over the pristine ``tools`` payload
4. schema conversion (only after 3 succeeds)
5. per tool, in manifest order: registry lookup, hash pin, schema
   equivalence, policy chain

One bad tool rejects the whole manifest.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

from .config import load_schema
from .errors import (
    InvalidJson,
    InvalidRegistry,
    InvalidSignature,
    MalformedManifest,
    SchemaMismatch,
    UnknownTool,
)
from .models import Manifest, Registry, RegistryEntry, Tool
from .policy import PolicyEngine
from .schema import build_schema, schemas_equivalent
from .signing import key_id_for_pem, verify_hash, verify_signature
from .utils.safe_json import safe_json_loads

logger = logging.getLogger("mcp_lockdown.manifest")

# Where the manifest verification key comes from
KEY_SOURCE_FIRST_TOOL = "first-tool"
KEY_SOURCE_ENVELOPE = "envelope"
KEY_SOURCES = (KEY_SOURCE_FIRST_TOOL, KEY_SOURCE_ENVELOPE)


# =============================================================================
# LOADING
# =============================================================================

def _read_json(path: str | Path, kind: str) -> Any:
    raw = Path(path).read_text(encoding="utf-8")
    try:
        return safe_json_loads(raw)
    except ValueError as e:
        raise InvalidJson(f"Invalid JSON in {kind} file: {e}") from e


def _schema_error(e: ValidationError) -> str:
    msg = e.message
    if e.path:
        msg += f" (at {'.'.join(str(p) for p in e.path)})"
    return msg


def manifest_from_dict(data: Any) -> Manifest:
    """Shape-check a parsed manifest document and build a ``Manifest``."""
    if not isinstance(data, dict):
        raise MalformedManifest("Invalid manifest: expected a JSON object")
    if not isinstance(data.get("tools"), list):
        raise MalformedManifest("Invalid manifest: missing or invalid tools array")
    if not data.get("signature"):
        raise MalformedManifest("Invalid manifest: missing signature")
    try:
        validate(data, load_schema("manifest"))
    except ValidationError as e:
        raise MalformedManifest(f"Invalid manifest: {_schema_error(e)}") from e
    return Manifest.from_dict(data)


def load_manifest(path: str | Path) -> Manifest:
    """Read and shape-check a manifest file.  Nothing is verified here.

    Raises:
        FileNotFoundError: If *path* does not exist.
        InvalidJson: If the file is not valid JSON.
        MalformedManifest: If ``tools`` is missing/not an array or
            ``signature`` is absent.
    """
    return manifest_from_dict(_read_json(path, "manifest"))


def registry_from_dict(data: Any) -> Registry:
    if not isinstance(data, dict) or not isinstance(data.get("tools"), list):
        raise InvalidRegistry("Invalid registry: missing or invalid tools array")
    try:
        validate(data, load_schema("registry"))
    except ValidationError as e:
        raise InvalidRegistry(f"Invalid registry: {_schema_error(e)}") from e
    return Registry.from_dict(data)


def load_registry(path: str | Path) -> Registry:
    """Read and shape-check a pinned registry file.

    Raises:
        FileNotFoundError: If *path* does not exist.
        InvalidJson: If the file is not valid JSON.
        InvalidRegistry: If ``tools`` is missing or not an array.
    """
    return registry_from_dict(_read_json(path, "registry"))


# =============================================================================
# VALIDATION
# =============================================================================

def _pinned_entry(registry: Registry, tool_name: str) -> RegistryEntry:
    entry = registry.get(tool_name)
    if entry is None:
        raise UnknownTool(
            f"No registry entry for tool: {tool_name}", tool_name=tool_name,
        )
    return entry


def _select_signing_key(
    manifest: Manifest, registry: Registry, key_source: str,
) -> str:
    """Return the pinned PEM the manifest signature must verify against."""
    if key_source == KEY_SOURCE_FIRST_TOOL:
        # One signing key per manifest, pinned on the first tool's entry
        return _pinned_entry(registry, manifest.tools[0].name).public_key

    if key_source == KEY_SOURCE_ENVELOPE:
        if not manifest.signing_key_id:
            raise MalformedManifest(
                "Invalid manifest: signingKeyId is required when the "
                "signing key comes from the manifest envelope"
            )
        for entry in registry.tools or []:
            if entry.public_key and key_id_for_pem(entry.public_key) == manifest.signing_key_id:
                return entry.public_key
        raise InvalidSignature(
            f"No pinned public key matches signingKeyId: "
            f"{manifest.signing_key_id}"
        )

    raise ValueError(
        f"Unknown key source '{key_source}'. "
        f"Must be one of: {', '.join(KEY_SOURCES)}"
    )


async def validate_manifest(
    manifest: Manifest,
    registry: Registry,
    policy_engine: PolicyEngine,
    *,
    key_source: str = KEY_SOURCE_FIRST_TOOL,
    strict_schemas: bool = False,
) -> list[Tool]:
    """Verify a manifest against the pinned registry and policy chain.

    Returns the manifest's tools with built schema values.  Raises the
    first ``LockdownError`` encountered; no partial result is returned.
    """
    if not isinstance(registry.tools, list):
        raise InvalidRegistry("Invalid registry: missing or invalid tools array")
    if not manifest.tools:
        raise MalformedManifest("Invalid manifest: tools array is empty")

    public_key = _select_signing_key(manifest, registry, key_source)

    # The signature covers the wire payload; check it before converting anything
    if not verify_signature(manifest, public_key, manifest.signature):
        raise InvalidSignature("Invalid signature for manifest")
    logger.info("Manifest signature verified (%d tools)", len(manifest.tools))

    built = [
        dataclasses.replace(tool, input_schema=build_schema(tool.input_schema))
        for tool in manifest.tools
    ]

    for tool in built:
        pinned = _pinned_entry(registry, tool.name)
        verify_hash(tool, pinned.handler_hash)
        if not schemas_equivalent(
            tool.input_schema,
            build_schema(pinned.input_schema),
            strict=strict_schemas,
        ):
            raise SchemaMismatch(
                f"Schema mismatch for tool: {tool.name}", tool_name=tool.name,
            )
        await policy_engine.enforce(tool)
        logger.info("Tool verified: %s", tool.name)

    return built
