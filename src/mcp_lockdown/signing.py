"""
Manifest signing and verification, plus per-tool hash pinning.

The manifest signature covers the canonical serialization of the
manifest's ``tools`` array only: compact JSON, array order and object
key order preserved exactly as received.  Verification therefore runs
over ``Manifest.raw_tools`` (the pristine wire payload), never over
tools whose schemas have already been converted.

Supported key types: RSA (PKCS#1 v1.5 / SHA-256), ECDSA (SHA-256) and
Ed25519.  Public keys are PEM; registry files commonly carry them with
literal ``\\n`` escapes, which ``normalize_pem`` converts back.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import re
from pathlib import Path
from typing import Any, Union

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import HashMismatch
from .models import Manifest, Tool

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, Ed25519PrivateKey]
PublicKey = Union[rsa.RSAPublicKey, ec.EllipticCurvePublicKey, Ed25519PublicKey]

SUPPORTED_ALGORITHMS = ("rsa", "ec", "ed25519")


# =============================================================================
# CANONICAL SERIALIZATION
# =============================================================================

# JSON.stringify switches to exponent form at this magnitude
_JS_EXPONENT_THRESHOLD = 1e21


def _js_numbers(value: Any) -> Any:
    """Rewrite integral floats as ints so ``1.0`` serializes as ``1``.

    ``json.loads`` turns ``1.0`` and ``1e3`` into floats, which
    ``json.dumps`` writes back as ``1.0`` and ``1000.0``; JavaScript
    signers write ``1`` and ``1000``.  Other floats print the same in
    both above ``1e-4``; smaller magnitudes differ (Python writes
    ``1e-05`` where JavaScript writes ``0.00001``) and are left alone.
    """
    if isinstance(value, float):
        if value.is_integer() and abs(value) < _JS_EXPONENT_THRESHOLD:
            return int(value)
        return value
    if isinstance(value, dict):
        return {k: _js_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_js_numbers(v) for v in value]
    return value


def canonical_tools_bytes(tools: list[Any]) -> bytes:
    """Serialize a tools array to the bytes a manifest signature covers.

    Order-preserving and field-order-preserving: no key sorting, no
    whitespace, non-ASCII emitted verbatim as UTF-8, and integral
    numbers written without a fraction, as ``JSON.stringify`` does.
    """
    return json.dumps(
        _js_numbers(tools),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


# =============================================================================
# KEY HANDLING
# =============================================================================

def normalize_pem(text: str) -> str:
    """Turn literal ``\\n`` escapes into real newlines."""
    return text.replace("\\n", "\n")


def pem_to_json_string(text: str) -> str:
    """Inverse of ``normalize_pem``: escape newlines for embedding in JSON."""
    return text.strip().replace("\n", "\\n") + "\\n"


def load_public_key_pem(pem: str | bytes) -> PublicKey:
    """Parse a PEM public key, normalizing escaped newlines first."""
    if isinstance(pem, str):
        pem = normalize_pem(pem).encode("utf-8")
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey, Ed25519PublicKey)):
        raise ValueError(f"Unsupported public key type: {type(key).__name__}")
    return key


def load_private_key_pem(pem: str | bytes) -> PrivateKey:
    """Parse an unencrypted PEM private key."""
    if isinstance(pem, str):
        pem = normalize_pem(pem).encode("utf-8")
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, Ed25519PrivateKey)):
        raise ValueError(f"Unsupported private key type: {type(key).__name__}")
    return key


def load_private_key(path: str | Path) -> PrivateKey:
    """Load a private key from a PEM file."""
    return load_private_key_pem(Path(path).read_bytes())


def load_public_key(path: str | Path) -> PublicKey:
    """Load a public key from a PEM file."""
    return load_public_key_pem(Path(path).read_bytes())


def public_key_to_pem(public_key: PublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def compute_key_id(public_key: PublicKey) -> str:
    """Full SHA-256 hex fingerprint of the DER SubjectPublicKeyInfo."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


def key_id_for_pem(pem: str) -> str | None:
    """Fingerprint of a PEM public key, or ``None`` if it does not parse."""
    try:
        return compute_key_id(load_public_key_pem(pem))
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return None


def generate_keypair(
    output_dir: str | Path = ".",
    algorithm: str = "rsa",
) -> tuple[Path, Path]:
    """Generate a keypair and write ``<key_id>.key`` / ``<key_id>.pub``.

    Returns (private_key_path, public_key_path).
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(
            f"Unsupported algorithm '{algorithm}'. "
            f"Must be one of: {', '.join(SUPPORTED_ALGORITHMS)}"
        )
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    private_key: PrivateKey
    if algorithm == "rsa":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    elif algorithm == "ec":
        private_key = ec.generate_private_key(ec.SECP256R1())
    else:
        private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    key_id = compute_key_id(public_key)

    private_path = output_dir / f"{key_id}.key"
    public_path = output_dir / f"{key_id}.pub"

    private_path.write_bytes(private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    public_path.write_text(public_key_to_pem(public_key))

    # Restrict private key permissions (POSIX only)
    try:
        os.chmod(private_path, 0o600)
    except OSError:
        pass  # Windows or restricted filesystem

    return private_path, public_path


# =============================================================================
# SIGNING
# =============================================================================

def sign_bytes(data: bytes, private_key: PrivateKey) -> str:
    """Sign *data* with SHA-256 and return the base64-encoded signature."""
    if isinstance(private_key, rsa.RSAPrivateKey):
        signature = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        signature = private_key.sign(data, ec.ECDSA(hashes.SHA256()))
    else:
        signature = private_key.sign(data)
    return base64.b64encode(signature).decode("ascii")


def sign_tools(tools: list[Any], private_key: PrivateKey) -> str:
    """Sign a manifest ``tools`` array (as parsed from the wire)."""
    return sign_bytes(canonical_tools_bytes(tools), private_key)


def verify_bytes(data: bytes, signature_b64: str, public_key: PublicKey) -> bool:
    """Verify a base64 signature over *data*.  Returns True if valid.

    Uses strict base64 decoding (validate=True) after stripping
    whitespace.
    """
    try:
        sig_clean = re.sub(r"\s+", "", signature_b64)
        signature = base64.b64decode(sig_clean, validate=True)
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        else:
            public_key.verify(signature, data)
        return True
    except (binascii.Error, ValueError, TypeError, _CryptoInvalidSignature):
        return False


def verify_signature(
    manifest: Manifest,
    public_key_pem: str,
    signature_b64: str,
) -> bool:
    """Verify *signature_b64* over the manifest's pristine tools array.

    Returns False for a bad signature, an unparseable key or a payload
    that cannot be serialized.  Never mutates *manifest*.
    """
    try:
        public_key = load_public_key_pem(public_key_pem)
        data = canonical_tools_bytes(manifest.raw_tools)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return False
    return verify_bytes(data, signature_b64, public_key)


# =============================================================================
# HASH PINNING
# =============================================================================

def verify_hash(tool: Tool, expected_hash: str) -> None:
    """Raise ``HashMismatch`` unless ``tool.handler_hash == expected_hash``.

    The hash is an opaque string; how it was produced is not checked.
    An empty pinned hash matches nothing.
    """
    if not expected_hash or tool.handler_hash != expected_hash:
        raise HashMismatch(f"hash mismatch for {tool.name}", tool_name=tool.name)
