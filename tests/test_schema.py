"""Tests for character_tools.schema — custom schema validation."""

import json

from character_tools.schema import validate_schema


def _wrap(value: dict, name: str = "Result", **extra) -> str:
    return json.dumps({"name": name, "value": value, **extra})


def _object(props: dict, required: list | None = None) -> dict:
    return {
        "type": "object",
        "properties": props,
        "required": list(props) if required is None else required,
        "additionalProperties": False,
    }


def _nested(levels: int) -> dict:
    node: dict = {"type": "string"}
    for _ in range(levels):
        node = _object({"x": node})
    return node


class TestWrapper:
    def test_empty_text_means_no_schema(self) -> None:
        result = validate_schema("   ")
        assert result.valid
        assert result.parsed is None

    def test_json_syntax_error(self) -> None:
        result = validate_schema('{"name": ')
        assert not result.valid
        assert result.error.startswith("JSON syntax error (line 1")

    def test_not_an_object(self) -> None:
        result = validate_schema("[1, 2]")
        assert result.error == "Schema must be a JSON object, not array"

    def test_missing_name(self) -> None:
        result = validate_schema(json.dumps({"value": {"type": "object"}}))
        assert result.error == "Missing required 'name' property (string)"

    def test_empty_name(self) -> None:
        assert validate_schema(_wrap({"type": "object"}, name=" ")).error == "'name' cannot be empty"

    def test_name_must_be_identifier(self) -> None:
        result = validate_schema(_wrap({"type": "object"}, name="my schema"))
        assert not result.valid
        assert "valid identifier" in result.error

    def test_missing_value(self) -> None:
        result = validate_schema(json.dumps({"name": "X"}))
        assert result.error == "Missing or invalid 'value' property (must be object)"

    def test_value_without_type(self) -> None:
        result = validate_schema(_wrap({"properties": {}}))
        assert result.error == "'value' must have a 'type', 'anyOf', 'allOf', or '$ref'"

    def test_strict_must_be_bool(self) -> None:
        result = validate_schema(_wrap({"type": "object"}, strict="yes"))
        assert result.error == "'strict' must be a boolean if provided"

    def test_valid_schema_parsed(self) -> None:
        value = _object({"score": {"type": "number"}})
        result = validate_schema(_wrap(value, strict=False))
        assert result.valid
        assert result.error is None
        assert result.parsed.name == "Result"
        assert result.parsed.strict is False
        assert result.parsed.value == value
        assert result.info and result.info[0].startswith("Schema stats: 1 properties")


class TestLimits:
    def test_nesting_within_limit(self) -> None:
        assert validate_schema(_wrap(_nested(9))).valid

    def test_nesting_exceeds_limit(self) -> None:
        result = validate_schema(_wrap(_nested(10)))
        assert not result.valid
        assert "Exceeds maximum nesting depth of 10" in result.error

    def test_anyof_variants(self) -> None:
        variants = [{"type": "string"} for _ in range(9)]
        result = validate_schema(_wrap(_object({"x": {"anyOf": variants}})))
        assert not result.valid
        assert "value.x: anyOf has 9 variants (max: 8)" in result.error

    def test_empty_enum(self) -> None:
        result = validate_schema(_wrap(_object({"x": {"type": "string", "enum": []}})))
        assert "value.x: enum cannot be empty" in result.error

    def test_unsupported_keyword(self) -> None:
        result = validate_schema(_wrap(_object({"x": {"type": "string", "not": {"const": "a"}}})))
        assert not result.valid
        assert "value.x: 'not' is not supported" in result.error

    def test_one_of_unsupported(self) -> None:
        result = validate_schema(_wrap({"oneOf": [], "type": "object", "additionalProperties": False}))
        assert "value: 'oneOf' is not supported" in result.error

    def test_errors_joined_by_newline(self) -> None:
        value = _object({
            "a": {"type": "string", "not": {}},
            "b": {"type": "string", "enum": []},
        })
        result = validate_schema(_wrap(value))
        assert len(result.error.split("\n")) == 2

    def test_regex_backreference(self) -> None:
        result = validate_schema(_wrap(_object({"x": {"type": "string", "pattern": r"(a)\1"}})))
        assert "value.x: pattern uses unsupported backreferences" in result.error


class TestRefs:
    def test_local_ref_resolves(self) -> None:
        value = _object({"item": {"$ref": "#/$defs/Item"}})
        value["$defs"] = {"Item": _object({"n": {"type": "string"}})}
        assert validate_schema(_wrap(value)).valid

    def test_dangling_ref(self) -> None:
        value = _object({"item": {"$ref": "#/$defs/Missing"}})
        result = validate_schema(_wrap(value))
        assert "value.item: Reference '#/$defs/Missing' not found in definitions" in result.error

    def test_external_ref(self) -> None:
        value = _object({"item": {"$ref": "https://example.com/s.json"}})
        assert "External $ref not supported" in validate_schema(_wrap(value)).error


class TestWarnings:
    def test_missing_additional_properties(self) -> None:
        result = validate_schema(_wrap({"type": "object", "properties": {}}))
        assert result.valid
        assert "value: Missing 'additionalProperties: false'" in result.warnings

    def test_ignored_constraint(self) -> None:
        result = validate_schema(_wrap(_object({"n": {"type": "integer", "minimum": 0}})))
        assert result.valid
        assert "value.n: 'minimum' will be ignored (not supported)" in result.warnings

    def test_many_optional_fields(self) -> None:
        props = {f"f{i}": {"type": "string"} for i in range(11)}
        result = validate_schema(_wrap(_object(props, required=[])))
        assert result.valid
        assert any("11 optional fields" in w for w in result.warnings)

    def test_unknown_format(self) -> None:
        result = validate_schema(_wrap(_object({"d": {"type": "string", "format": "color"}})))
        assert any("format 'color' may not be supported" in w for w in result.warnings)
