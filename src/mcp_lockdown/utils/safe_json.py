"""Strict JSON parsing for manifests, registries and server-set files.

Python's ``json.loads()`` keeps the last value for a duplicated key.  A
manifest with two ``"tools"`` keys could be read one way by the signer
and another way here, so duplicates are rejected at every nesting
level.  ``NaN`` / ``Infinity`` are rejected too: they cannot be
re-serialized into the canonical form a signature covers.
"""

from __future__ import annotations

import json
from typing import Any


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict:
    """Object pairs hook that raises on duplicate keys."""
    seen: dict = {}
    for key, value in pairs:
        if key in seen:
            raise ValueError(f"Duplicate JSON key: {key!r}")
        seen[key] = value
    return seen


def _reject_non_standard_constant(constant: str) -> Any:
    raise ValueError(
        f"Non-standard JSON constant not allowed: {constant!r}"
    )


def safe_json_loads(s: str) -> Any:
    """Parse JSON, rejecting duplicate keys and non-standard constants.

    Raises ``ValueError`` (``json.JSONDecodeError`` is a subclass) on any
    parse failure.
    """
    return json.loads(
        s,
        object_pairs_hook=_reject_duplicate_keys,
        parse_constant=_reject_non_standard_constant,
    )
