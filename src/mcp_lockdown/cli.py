"""
CLI entry point for the mcp-lockdown command.

Subcommands:
  audit        verify a signed manifest against the pinned registry
  policies     list the built-in policy rules
  sign         sign a manifest's tools array with a private key
  keygen       generate a signing keypair
  update-keys  write a public key into every tool of a manifest and registry
  serve        run the lockdown proxy over stdio

Exit codes: 0=ok, 1=I/O or usage error, 2=malformed input,
3=trust failure, 4=policy veto.
"""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm

from .config import LockdownConfigError, load_lockdown_config
from .errors import LockdownError, MalformedManifest
from .manifest import KEY_SOURCES, KEY_SOURCE_FIRST_TOOL, load_manifest, load_registry, validate_manifest
from .rules import default_engine
from .signing import (
    SUPPORTED_ALGORITHMS,
    compute_key_id,
    generate_keypair,
    load_private_key,
    pem_to_json_string,
    sign_tools,
)
from .utils.safe_json import safe_json_loads
from .version import __version__

DEFAULT_REGISTRY = "./tool-registry.json"


def _configure_logging(verbose: bool) -> None:
    # stdout carries results (and MCP traffic for serve); logs go to stderr
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _read_json_document(path: str) -> dict:
    data = safe_json_loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return data


def _write_json_document(path: str, data: dict) -> None:
    Path(path).write_text(json.dumps(data, indent=4, ensure_ascii=False), encoding="utf-8")


# =============================================================================
# AUDIT
# =============================================================================

def main_audit(args: argparse.Namespace) -> int:
    """Load, verify and policy-check a manifest.  Fails on the first error."""
    engine = default_engine()

    if args.verbose:
        print(f"Manifest path: {Path(args.manifest).resolve()}", file=sys.stderr)
        print(f"Registry path: {Path(args.registry).resolve()}", file=sys.stderr)

    try:
        registry = load_registry(args.registry)
    except OSError as e:
        print(f"Failed to read registry file: {args.registry}", file=sys.stderr)
        print(f"  Error: {e}", file=sys.stderr)
        return 1
    except LockdownError as e:
        print(f"validation error: {e}", file=sys.stderr)
        return e.exit_code

    try:
        manifest = load_manifest(args.manifest)
        if args.verbose:
            print(
                f"Registry contains {len(registry.tools or [])} tools, "
                f"manifest contains {len(manifest.tools)} tools",
                file=sys.stderr,
            )
        asyncio.run(validate_manifest(
            manifest,
            registry,
            engine,
            key_source=args.key_source,
            strict_schemas=args.strict_schemas,
        ))
    except OSError as e:
        print(f"Failed to read manifest file: {args.manifest}", file=sys.stderr)
        print(f"  Error: {e}", file=sys.stderr)
        return 1
    except LockdownError as e:
        print(f"validation error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return e.exit_code

    print("manifest passed all checks")
    return 0


# =============================================================================
# POLICIES
# =============================================================================

def main_policies(args: argparse.Namespace) -> int:
    print("\n".join(default_engine().list()))
    return 0


# =============================================================================
# SIGNING AND KEYS
# =============================================================================

def main_sign(args: argparse.Namespace) -> int:
    """Sign the manifest's ``tools`` array in place."""
    try:
        manifest = _read_json_document(args.manifest)
        private_key = load_private_key(args.private_key)
    except (OSError, ValueError, UnsupportedAlgorithm) as e:
        print(f"Error signing manifest: {e}", file=sys.stderr)
        return 1

    tools = manifest.get("tools")
    if not isinstance(tools, list):
        err = MalformedManifest("Invalid manifest: missing or invalid tools array")
        print(f"Error signing manifest: {err}", file=sys.stderr)
        return err.exit_code

    signature = sign_tools(tools, private_key)
    manifest["signature"] = signature
    if args.embed_key_id:
        manifest["signingKeyId"] = compute_key_id(private_key.public_key())

    _write_json_document(args.manifest, manifest)
    print(f"Manifest signed. Signature: {signature}")
    return 0


def main_keygen(args: argparse.Namespace) -> int:
    try:
        private_path, public_path = generate_keypair(args.output_dir, args.algorithm)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Generated {args.algorithm} keypair ({private_path.stem})")
    print(f"  Private key: {private_path}")
    print(f"  Public key:  {public_path}")
    print()
    print("Next steps:")
    print(f"  1. mcp-lockdown update-keys {public_path} <manifest> <registry>")
    print(f"  2. mcp-lockdown sign <manifest> {private_path}")
    return 0


def main_update_keys(args: argparse.Namespace) -> int:
    """Pin a public key on every tool of a manifest and a registry.

    Changes the signed payload, so the manifest must be re-signed.
    """
    try:
        public_pem = Path(args.public_key).read_text(encoding="utf-8")
        manifest = _read_json_document(args.manifest)
        registry = _read_json_document(args.registry)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Stored with literal \n escapes, the way registry files carry PEMs
    escaped = pem_to_json_string(public_pem)
    for label, document in (("manifest", manifest), ("registry", registry)):
        tools = document.get("tools")
        if not isinstance(tools, list):
            print(f"Error: {label} has no tools array", file=sys.stderr)
            return 2
        for tool in tools:
            if isinstance(tool, dict):
                tool["publicKey"] = escaped

    _write_json_document(args.manifest, manifest)
    _write_json_document(args.registry, registry)
    print("Updated public keys in both manifest and registry")
    print(f"Re-sign the manifest: mcp-lockdown sign {args.manifest} <private_key>")
    return 0


# =============================================================================
# SERVE
# =============================================================================

def main_serve(args: argparse.Namespace) -> int:
    from .aggregator import LockdownAggregator

    try:
        config = load_lockdown_config(args.config)
    except LockdownConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    aggregator = LockdownAggregator(config, default_engine())
    asyncio.run(aggregator.run_stdio())
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-lockdown",
        description="Signed manifest audits and policy lockdown for MCP tools",
        epilog="Exit codes: 0=ok, 1=I/O or usage error, 2=malformed input, "
               "3=trust failure, 4=policy veto",
    )
    parser.add_argument("--version", action="version", version=f"mcp-lockdown {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    audit = sub.add_parser("audit", help="verify manifest signature, hashes, schemas, and policies")
    audit.add_argument("manifest", help="Path to the signed manifest JSON file")
    audit.add_argument("--registry", "-r", default=DEFAULT_REGISTRY,
                       help=f"Path to the tool registry JSON file (default: {DEFAULT_REGISTRY})")
    audit.add_argument("--verbose", "-v", action="store_true",
                       help="Verbose output and tracebacks on failure")
    audit.add_argument("--key-source", choices=KEY_SOURCES, default=KEY_SOURCE_FIRST_TOOL,
                       help="Where the verification key comes from (default: first-tool)")
    audit.add_argument("--strict-schemas", action="store_true",
                       help="Require exact schema equivalence, not just matching field names")
    audit.set_defaults(func=main_audit)

    policies = sub.add_parser("policies", help="list registered policies and shields")
    policies.set_defaults(func=main_policies)

    sign = sub.add_parser("sign", help="sign the manifest's tools array with the given private key")
    sign.add_argument("manifest", help="Path to the manifest JSON file (rewritten in place)")
    sign.add_argument("private_key", help="Path to a PEM private key")
    sign.add_argument("--embed-key-id", action="store_true",
                      help="Also record the signing key fingerprint as signingKeyId")
    sign.set_defaults(func=main_sign)

    keygen = sub.add_parser("keygen", help="generate a signing keypair named by key id")
    keygen.add_argument("--output-dir", "-o", default=".",
                        help="Directory for the key files (default: current directory)")
    keygen.add_argument("--algorithm", choices=SUPPORTED_ALGORITHMS, default="rsa",
                        help="Key algorithm (default: rsa)")
    keygen.set_defaults(func=main_keygen)

    update = sub.add_parser("update-keys", help="write a public key into every manifest and registry tool")
    update.add_argument("public_key", help="Path to a PEM public key")
    update.add_argument("manifest", help="Path to the manifest JSON file")
    update.add_argument("registry", help="Path to the registry JSON file")
    update.set_defaults(func=main_update_keys)

    serve = sub.add_parser("serve", help="run the lockdown proxy over stdio")
    serve.add_argument("--config", required=True,
                       help="Path to the lockdown server-set file (JSON or YAML)")
    serve.add_argument("--verbose", "-v", action="store_true", help="Log at INFO level")
    serve.set_defaults(func=main_serve)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", False))
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
