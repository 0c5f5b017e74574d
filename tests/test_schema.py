"""Tests for schema building and structural equivalence."""

import pytest

from mcp_lockdown.schema import (
    ArraySchema,
    IntegerSchema,
    NumberSchema,
    ObjectField,
    ObjectSchema,
    StringSchema,
    UnknownSchema,
    build_schema,
    is_schema_value,
    schema_to_canonical,
    schemas_equivalent,
)


# =============================================================================
# build_schema
# =============================================================================

class TestBuildSchema:
    @pytest.mark.parametrize("tag, expected", [
        ("string", StringSchema()),
        ("number", NumberSchema()),
        ("integer", IntegerSchema()),
        ("array", ArraySchema()),
    ])
    def test_primitives(self, tag, expected):
        assert build_schema({"type": tag}) == expected

    def test_unknown_tag(self):
        assert build_schema({"type": "null"}) == UnknownSchema()

    def test_missing_or_non_dict(self):
        assert build_schema(None) == UnknownSchema()
        assert build_schema("string") == UnknownSchema()
        assert build_schema({}) == UnknownSchema()

    def test_object_required_and_optional(self):
        schema = build_schema({
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "string"}},
            "required": ["a"],
        })
        assert isinstance(schema, ObjectSchema)
        fields = dict(schema.fields)
        assert fields["a"] == ObjectField(NumberSchema(), optional=False)
        assert fields["b"] == ObjectField(StringSchema(), optional=True)

    def test_object_without_properties_is_empty_object(self):
        schema = build_schema({"type": "object"})
        assert schema == ObjectSchema()
        assert schema.field_names == frozenset()

    def test_nested_objects_are_built(self):
        schema = build_schema({
            "type": "object",
            "properties": {
                "point": {
                    "type": "object",
                    "properties": {"x": {"type": "integer"}},
                    "required": ["x"],
                },
            },
        })
        inner = dict(schema.fields)["point"].schema
        assert isinstance(inner, ObjectSchema)
        assert dict(inner.fields)["x"].schema == IntegerSchema()

    def test_array_element_type_is_erased(self):
        a = build_schema({"type": "array", "items": {"type": "string"}})
        b = build_schema({"type": "array", "items": {"type": "number"}})
        assert a == b == ArraySchema()

    def test_built_value_returned_unchanged(self):
        built = build_schema({"type": "object", "properties": {"a": {"type": "string"}}})
        assert build_schema(built) is built
        assert is_schema_value(built)
        assert not is_schema_value({"type": "string"})


# =============================================================================
# schemas_equivalent
# =============================================================================

ADD = {
    "type": "object",
    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    "required": ["a", "b"],
}


class TestSchemasEquivalent:
    def test_reflexive(self):
        for desc in (ADD, {"type": "string"}, {"type": "array"}, {"type": "object"}, {}):
            s = build_schema(desc)
            assert schemas_equivalent(s, s)
            assert schemas_equivalent(s, build_schema(desc))

    def test_property_order_does_not_matter(self):
        reordered = {
            "type": "object",
            "properties": {"b": {"type": "number"}, "a": {"type": "number"}},
            "required": ["b", "a"],
        }
        assert schemas_equivalent(build_schema(ADD), build_schema(reordered), strict=True)

    def test_different_property_names_mismatch(self):
        other = {
            "type": "object",
            "properties": {"a": {"type": "number"}, "c": {"type": "number"}},
            "required": ["a", "c"],
        }
        assert not schemas_equivalent(build_schema(ADD), build_schema(other))

    def test_extra_property_mismatch(self):
        extra = {
            "type": "object",
            "properties": {
                "a": {"type": "number"},
                "b": {"type": "number"},
                "c": {"type": "number"},
            },
        }
        assert not schemas_equivalent(build_schema(ADD), build_schema(extra))

    def test_same_names_different_types_is_shape_equivalent(self):
        retyped = {
            "type": "object",
            "properties": {"a": {"type": "string"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        }
        assert schemas_equivalent(build_schema(ADD), build_schema(retyped))

    def test_strict_rejects_type_change(self):
        retyped = {
            "type": "object",
            "properties": {"a": {"type": "string"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        }
        assert not schemas_equivalent(build_schema(ADD), build_schema(retyped), strict=True)

    def test_strict_rejects_optionality_change(self):
        loose = dict(ADD, required=["a"])
        assert schemas_equivalent(build_schema(ADD), build_schema(loose))
        assert not schemas_equivalent(build_schema(ADD), build_schema(loose), strict=True)

    def test_primitive_kinds_differ(self):
        assert not schemas_equivalent(StringSchema(), NumberSchema())
        assert not schemas_equivalent(build_schema(ADD), StringSchema())

    def test_non_schema_input_is_not_equivalent(self):
        assert not schemas_equivalent({"type": "string"}, StringSchema())


class TestCanonical:
    def test_fields_sorted_by_name(self):
        canon = schema_to_canonical(build_schema({
            "type": "object",
            "properties": {"z": {"type": "string"}, "a": {"type": "string"}},
        }))
        assert list(canon["fields"]) == ["a", "z"]

    def test_rejects_plain_dict(self):
        with pytest.raises(TypeError):
            schema_to_canonical({"type": "string"})
