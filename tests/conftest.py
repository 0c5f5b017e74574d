"""Shared fixtures for the mcp-lockdown test suite.

Keys are generated once per session.  Manifests and registries are built
as plain wire dicts (camelCase keys) and signed with the session RSA key;
registry PEMs carry literal ``\\n`` escapes the way real registry files do.
"""

import copy

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from mcp_lockdown.signing import pem_to_json_string, public_key_to_pem, sign_tools

ADD_SCHEMA = {
    "type": "object",
    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    "required": ["a", "b"],
}


@pytest.fixture(scope="session")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_pem(private_key):
    return pem_to_json_string(public_key_to_pem(private_key.public_key()))


@pytest.fixture()
def make_tool(public_pem):
    """Factory for a manifest/registry tool entry (``add`` by default)."""
    def _make(
        name="add",
        description="adds numbers",
        input_schema=None,
        handler_hash="H1",
        public_key=None,
    ):
        return {
            "name": name,
            "description": description,
            "inputSchema": copy.deepcopy(
                ADD_SCHEMA if input_schema is None else input_schema
            ),
            "handlerHash": handler_hash,
            "publicKey": public_pem if public_key is None else public_key,
        }
    return _make


@pytest.fixture()
def make_manifest(private_key, make_tool):
    """Factory for a signed manifest dict."""
    def _make(tools=None, key=None, **extra):
        if tools is None:
            tools = [make_tool()]
        manifest = {
            "schemaVersion": "1.0",
            "nameForHuman": "Calculator",
            "nameForModel": "calculator",
            "description": "Basic arithmetic",
            "version": "1.0.0",
            "tools": tools,
        }
        manifest.update(extra)
        manifest["signature"] = sign_tools(tools, key or private_key)
        return manifest
    return _make


@pytest.fixture()
def make_registry(make_tool):
    """Factory for a registry dict pinning the given tool entries."""
    def _make(tools=None):
        return {"tools": [make_tool()] if tools is None else tools}
    return _make
