"""Structural input-schema values and the equivalence check used for pinning.

A tool's ``inputSchema`` arrives as a plain JSON-schema-like dict.
``build_schema`` turns it into a closed tagged union of frozen
dataclasses::

    StringSchema | NumberSchema | IntegerSchema | BooleanSchema
    | ArraySchema | ObjectSchema(fields) | UnknownSchema

Only ``type``, ``properties`` and ``required`` are read.  Array element
types are erased; unrecognized type tags become ``UnknownSchema``.

``schemas_equivalent`` is a *shape* check by default: two object schemas
with the same property-name set are equivalent even when a property's
type differs.  Pass ``strict=True`` to require full canonical equality.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger("mcp_lockdown.schema")


@dataclass(frozen=True)
class StringSchema:
    kind = "string"


@dataclass(frozen=True)
class NumberSchema:
    kind = "number"


@dataclass(frozen=True)
class IntegerSchema:
    kind = "integer"


@dataclass(frozen=True)
class BooleanSchema:
    kind = "boolean"


@dataclass(frozen=True)
class ArraySchema:
    """Array of anything; element types are not tracked."""
    kind = "array"


@dataclass(frozen=True)
class UnknownSchema:
    """Fallback for missing or unrecognized type tags."""
    kind = "unknown"


@dataclass(frozen=True)
class ObjectField:
    schema: SchemaValue
    optional: bool = False


@dataclass(frozen=True)
class ObjectSchema:
    """Object with named fields, in declaration order."""
    fields: tuple[tuple[str, ObjectField], ...] = field(default_factory=tuple)
    kind = "object"

    @property
    def field_names(self) -> frozenset[str]:
        return frozenset(name for name, _ in self.fields)


SchemaValue = Union[
    StringSchema,
    NumberSchema,
    IntegerSchema,
    BooleanSchema,
    ArraySchema,
    ObjectSchema,
    UnknownSchema,
]

_PRIMITIVES: dict[str, SchemaValue] = {
    "string": StringSchema(),
    "number": NumberSchema(),
    "integer": IntegerSchema(),
    "boolean": BooleanSchema(),
    "array": ArraySchema(),
}

_SCHEMA_TYPES = (
    StringSchema, NumberSchema, IntegerSchema, BooleanSchema,
    ArraySchema, ObjectSchema, UnknownSchema,
)


def is_schema_value(value: Any) -> bool:
    """Return True if *value* is already a built ``SchemaValue``."""
    return isinstance(value, _SCHEMA_TYPES)


def build_schema(description: Any) -> SchemaValue:
    """Convert a plain schema description into a ``SchemaValue``.

    Already-built values are returned unchanged.  Object properties not
    named in ``required`` are marked optional.
    """
    if is_schema_value(description):
        return description
    if not isinstance(description, dict):
        return UnknownSchema()

    type_tag = description.get("type")
    if type_tag == "object":
        properties = description.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        required = description.get("required")
        if not isinstance(required, list):
            required = []
        fields = tuple(
            (
                str(name),
                ObjectField(
                    schema=build_schema(prop),
                    optional=name not in required,
                ),
            )
            for name, prop in properties.items()
        )
        return ObjectSchema(fields=fields)

    if isinstance(type_tag, str) and type_tag in _PRIMITIVES:
        return _PRIMITIVES[type_tag]
    return UnknownSchema()


def schema_to_canonical(value: SchemaValue) -> dict[str, Any]:
    """Canonical plain-dict form of a ``SchemaValue``.

    Object fields are emitted sorted by name so that property order in
    the source document does not affect equivalence.
    """
    if isinstance(value, ObjectSchema):
        return {
            "kind": "object",
            "fields": {
                name: {
                    "optional": f.optional,
                    "schema": schema_to_canonical(f.schema),
                }
                for name, f in sorted(value.fields, key=lambda item: item[0])
            },
        }
    if not is_schema_value(value):
        raise TypeError(f"Not a schema value: {type(value).__name__}")
    return {"kind": value.kind}


def _canonical_text(value: SchemaValue) -> str:
    return json.dumps(
        schema_to_canonical(value), sort_keys=True, separators=(",", ":"),
    )


def schemas_equivalent(
    a: SchemaValue,
    b: SchemaValue,
    *,
    strict: bool = False,
) -> bool:
    """Decide whether two schema values describe equivalent input shapes.

    Equivalent when the canonical serializations match, or (unless
    *strict*) when both are objects declaring the same property names.
    Any internal error is reported as "not equivalent".
    """
    try:
        if _canonical_text(a) == _canonical_text(b):
            return True
        if strict:
            return False
        if isinstance(a, ObjectSchema) and isinstance(b, ObjectSchema):
            return a.field_names == b.field_names
        return False
    except Exception as exc:
        logger.warning("Schema comparison failed: %s", exc)
        return False
