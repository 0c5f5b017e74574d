"""Policy parameters and the lockdown server-set loader.

Policy parameters come from the environment, read once into a
``PolicyConfig`` and handed to the built-in rules::

    MCP_NETWORK_ALLOWLIST=example.com,api.trusted.com
    MCP_MAX_DESCRIPTION_LENGTH=200

Server-set file shape (JSON, or YAML with a ``.yaml`` / ``.yml``
suffix)::

    {
      "servers": {
        "my-calculator": {"type": "stdio", "command": "python",
                          "args": ["calculator.py"],
                          "env": {"API_KEY": "${CALC_API_KEY}"},
                          "timeout": 10},
        "remote": {"type": "http", "url": "https://tools.example.com/mcp"}
      }
    }
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import ValidationError, validate

from .models import (
    HttpConnection,
    LockdownConfig,
    ServerConnection,
    StdioConnection,
)

logger = logging.getLogger("mcp_lockdown.config")

ENV_NETWORK_ALLOWLIST = "MCP_NETWORK_ALLOWLIST"
ENV_MAX_DESCRIPTION_LENGTH = "MCP_MAX_DESCRIPTION_LENGTH"

DEFAULT_NETWORK_ALLOWLIST = ("example.com", "api.trusted.com")
DEFAULT_MAX_DESCRIPTION_LENGTH = 200
DEFAULT_CONNECT_TIMEOUT = 30.0

# Server names become the suffix of "<tool>_using_<server>"
_SERVER_NAME_PATTERN = re.compile(r"[a-zA-Z0-9-]+")

# Pattern for ${VAR_NAME} interpolation
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

_SCHEMA_DIR = Path(__file__).parent / "schemas"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LockdownConfigError(Exception):
    """Raised when the server-set file is invalid."""


# ---------------------------------------------------------------------------
# Policy configuration
# ---------------------------------------------------------------------------

@dataclass
class PolicyConfig:
    """Parameters for the configurable built-in rules."""
    network_allowlist: tuple[str, ...] = DEFAULT_NETWORK_ALLOWLIST
    max_description_length: int = DEFAULT_MAX_DESCRIPTION_LENGTH

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PolicyConfig:
        """Build from ``MCP_NETWORK_ALLOWLIST`` / ``MCP_MAX_DESCRIPTION_LENGTH``.

        Unset variables use the defaults.  An unparseable length logs a
        warning and falls back to the default.
        """
        env = os.environ if environ is None else environ

        allowlist = DEFAULT_NETWORK_ALLOWLIST
        raw_allowlist = env.get(ENV_NETWORK_ALLOWLIST)
        if raw_allowlist is not None:
            allowlist = tuple(h.strip() for h in raw_allowlist.split(",") if h.strip())

        max_length = DEFAULT_MAX_DESCRIPTION_LENGTH
        raw_length = env.get(ENV_MAX_DESCRIPTION_LENGTH)
        if raw_length:
            try:
                max_length = int(raw_length)
            except ValueError:
                logger.warning(
                    "%s=%r is not an integer; using default %d",
                    ENV_MAX_DESCRIPTION_LENGTH, raw_length,
                    DEFAULT_MAX_DESCRIPTION_LENGTH,
                )

        return cls(network_allowlist=allowlist, max_description_length=max_length)


# ---------------------------------------------------------------------------
# Server-set loading
# ---------------------------------------------------------------------------

def load_schema(name: str) -> dict:
    """Load a bundled JSON schema by file stem (``manifest``, ...)."""
    with open(_SCHEMA_DIR / f"{name}.schema.json") as f:
        return json.load(f)


def load_lockdown_config(config_path: str | Path) -> LockdownConfig:
    """Load and validate a lockdown server-set file.

    Raises:
        LockdownConfigError: If the file is missing, unparseable, or
            fails validation.
    """
    from .utils.safe_json import safe_json_loads
    from .utils.safe_yaml import safe_yaml_load

    path = Path(config_path)
    if not path.is_file():
        raise LockdownConfigError(f"Config file not found: {config_path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            raw = safe_yaml_load(text)
        else:
            raw = safe_json_loads(text)
    except (yaml.YAMLError, ValueError) as e:
        raise LockdownConfigError(f"Invalid config file {config_path}: {e}") from e

    return parse_lockdown_config(raw)


def parse_lockdown_config(raw: Any) -> LockdownConfig:
    """Validate an already-parsed server-set document."""
    if not isinstance(raw, dict):
        raise LockdownConfigError(
            f"Config must be a mapping (got {type(raw).__name__})"
        )
    try:
        validate(raw, load_schema("lockdown"))
    except ValidationError as e:
        msg = f"Config validation failed: {e.message}"
        if e.path:
            msg += f" (at {'.'.join(str(p) for p in e.path)})"
        raise LockdownConfigError(msg) from e

    servers: dict[str, ServerConnection] = {}
    for name, entry in raw["servers"].items():
        servers[name] = _parse_server(str(name), entry)

    if not servers:
        logger.warning("Config declares no downstream servers")
    return LockdownConfig(servers=servers)


def _parse_server(name: str, raw: dict[str, Any]) -> ServerConnection:
    prefix = f"servers.{name}"
    if not _SERVER_NAME_PATTERN.fullmatch(name):
        raise LockdownConfigError(
            f"{prefix}: server name '{name}' contains invalid characters. "
            f"Use alphanumerics and hyphens only."
        )

    timeout = float(raw.get("timeout", DEFAULT_CONNECT_TIMEOUT))

    if raw["type"] == "http":
        url = raw.get("url")
        if not url:
            raise LockdownConfigError(f"{prefix}: missing required field 'url'")
        return HttpConnection(
            name=name,
            url=str(url),
            request_init=raw.get("requestInit"),
            timeout=timeout,
        )

    command = raw.get("command")
    if not command:
        raise LockdownConfigError(f"{prefix}: missing required field 'command'")

    env: dict[str, str] | None = None
    env_raw = raw.get("env")
    if isinstance(env_raw, dict):
        env = {
            str(key): _interpolate_env(str(value), str(key), prefix)
            for key, value in env_raw.items()
        }

    return StdioConnection(
        name=name,
        command=str(command),
        args=[str(a) for a in raw.get("args", [])],
        env=env,
        timeout=timeout,
    )


def _interpolate_env(value: str, env_key: str, prefix: str) -> str:
    """Resolve ``${VAR_NAME}`` patterns from ``os.environ``.

    Raises:
        LockdownConfigError: If a referenced variable is not set.
    """
    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        resolved = os.environ.get(var_name)
        if resolved is None:
            raise LockdownConfigError(
                f"{prefix}.env.{env_key}: environment variable "
                f"'{var_name}' is not set"
            )
        return resolved

    return _ENV_VAR_PATTERN.sub(_replacer, value)
