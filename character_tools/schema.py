"""Validation of user-supplied structured output schemas.

Custom schemas are written as JSON text in the wrapper format

    {"name": "Identifier", "strict": true, "value": {<json schema>}}

and are checked against the limits of the strictest structured output
providers before they are ever sent. Hard problems (bad JSON, bad wrapper,
unsupported keywords, limits exceeded, dangling $refs) make the schema
invalid; constraints providers silently drop only produce warnings.

Limits:
  anyOf variants   8
  definitions      100
  nesting depth    10
  properties       100 per object (warning)
  enum values      500
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, Field

from .models import StructuredOutputSchema

MAX_ANYOF_VARIANTS = 8
MAX_DEFS = 100
MAX_NESTING_DEPTH = 10
MAX_PROPERTIES_PER_OBJECT = 100
MAX_ENUM_VALUES = 500

SUPPORTED_STRING_FORMATS = (
    "date-time", "time", "date", "duration",
    "email", "hostname", "uri", "ipv4", "ipv6", "uuid",
)

IGNORED_CONSTRAINTS = (
    "minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "multipleOf",
    "minLength", "maxLength",
    "maxItems", "uniqueItems", "contains", "minContains", "maxContains",
    "minProperties", "maxProperties", "propertyNames", "patternProperties",
)

UNSUPPORTED_FEATURES = (
    "if", "then", "else", "not", "oneOf",
    "dependentRequired", "dependentSchemas",
    "unevaluatedProperties", "unevaluatedItems",
    "$dynamicRef", "$dynamicAnchor",
)

UNSUPPORTED_REGEX_FEATURES = (
    (re.compile(r"\(\?[=!<]"), "lookahead/lookbehind assertions"),
    (re.compile(r"\\[1-9]"), "backreferences"),
    (re.compile(r"\\[bB]"), "word boundaries"),
)

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class SchemaValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    info: list[str] = Field(default_factory=list)
    parsed: StructuredOutputSchema | None = None


class _Walk:
    def __init__(self, defs: dict[str, Any]) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.info: list[str] = []
        self.defs = defs
        self.seen_refs: set[str] = set()
        self.depth = 0
        self.max_depth = 0
        self.property_count = 0
        self.optional_count = 0
        self.anyof_count = 0
        self.anyof_variants = 0

    def node(self, node: dict[str, Any], path: str) -> None:
        self.depth += 1
        self.max_depth = max(self.max_depth, self.depth)
        try:
            if self.depth > MAX_NESTING_DEPTH:
                self.errors.append(f"{path}: Exceeds maximum nesting depth of {MAX_NESTING_DEPTH}")
                return

            for feature in UNSUPPORTED_FEATURES:
                if feature in node:
                    self.errors.append(f"{path}: '{feature}' is not supported")
            for key in IGNORED_CONSTRAINTS:
                if key in node:
                    self.warnings.append(f"{path}: '{key}' will be ignored (not supported)")

            ref = node.get("$ref")
            if isinstance(ref, str):
                self.ref(ref, path)
                return

            types = node.get("type")
            for t in types if isinstance(types, list) else [types]:
                if t == "object":
                    self.object(node, path)
                elif t == "array":
                    self.array(node, path)
                elif t == "string":
                    self.string(node, path)
                elif t in ("number", "integer", "boolean", "null") or t is None:
                    pass
                elif "anyOf" not in node and "allOf" not in node:
                    self.warnings.append(f"{path}: Unknown type '{t}'")

            if isinstance(node.get("anyOf"), list):
                self.any_of(node["anyOf"], path)
            if isinstance(node.get("allOf"), list):
                self.all_of(node["allOf"], path)
            if isinstance(node.get("enum"), list):
                self.enum(node["enum"], path)
        finally:
            self.depth -= 1

    def object(self, node: dict[str, Any], path: str) -> None:
        if node.get("additionalProperties") is not False:
            self.warnings.append(f"{path}: Missing 'additionalProperties: false'")
        props = node.get("properties")
        if not isinstance(props, dict):
            return
        self.property_count += len(props)
        if len(props) > MAX_PROPERTIES_PER_OBJECT:
            self.warnings.append(f"{path}: {len(props)} properties (may be slow, consider splitting)")
        required = node.get("required") or []
        for key, prop in props.items():
            if key not in required:
                self.optional_count += 1
            if isinstance(prop, dict):
                self.node(prop, f"{path}.{key}")

    def array(self, node: dict[str, Any], path: str) -> None:
        min_items = node.get("minItems")
        if min_items is not None and min_items not in (0, 1):
            self.warnings.append(f"{path}: 'minItems: {min_items}' not supported (only 0 or 1 allowed)")
        items = node.get("items")
        if isinstance(items, dict):
            self.node(items, f"{path}.items")
        elif isinstance(items, list):
            for i, item in enumerate(items):
                if isinstance(item, dict):
                    self.node(item, f"{path}.items[{i}]")
        for i, item in enumerate(node.get("prefixItems") or []):
            if isinstance(item, dict):
                self.node(item, f"{path}.prefixItems[{i}]")

    def string(self, node: dict[str, Any], path: str) -> None:
        fmt = node.get("format")
        if isinstance(fmt, str) and fmt not in SUPPORTED_STRING_FORMATS:
            self.warnings.append(
                f"{path}: format '{fmt}' may not be supported. "
                f"Supported: {', '.join(SUPPORTED_STRING_FORMATS)}"
            )
        pattern = node.get("pattern")
        if isinstance(pattern, str):
            for regex, name in UNSUPPORTED_REGEX_FEATURES:
                if regex.search(pattern):
                    self.errors.append(f"{path}: pattern uses unsupported {name}")

    def ref(self, ref: str, path: str) -> None:
        if ref.startswith(("http://", "https://")):
            self.errors.append(f"{path}: External $ref not supported ('{ref}')")
            return
        if ref in self.seen_refs:
            self.info.append(f"{path}: Circular reference to '{ref}'")
            return
        self.seen_refs.add(ref)
        name = re.sub(r"^#/(\$defs|definitions)/", "", ref)
        if name not in self.defs:
            self.errors.append(f"{path}: Reference '{ref}' not found in definitions")

    def any_of(self, variants: list[Any], path: str) -> None:
        self.anyof_count += 1
        self.anyof_variants += len(variants)
        if not variants:
            self.errors.append(f"{path}: anyOf cannot be empty")
            return
        if len(variants) > MAX_ANYOF_VARIANTS:
            self.errors.append(
                f"{path}: anyOf has {len(variants)} variants (max: {MAX_ANYOF_VARIANTS})"
            )
        for i, variant in enumerate(variants):
            if isinstance(variant, dict):
                self.node(variant, f"{path}.anyOf[{i}]")

    def all_of(self, variants: list[Any], path: str) -> None:
        if not variants:
            self.errors.append(f"{path}: allOf cannot be empty")
            return
        for i, variant in enumerate(variants):
            if isinstance(variant, dict):
                if "$ref" in variant:
                    self.errors.append(f"{path}.allOf[{i}]: allOf with $ref not supported")
                self.node(variant, f"{path}.allOf[{i}]")

    def enum(self, values: list[Any], path: str) -> None:
        if not values:
            self.errors.append(f"{path}: enum cannot be empty")
        elif len(values) > MAX_ENUM_VALUES:
            self.errors.append(f"{path}: enum has {len(values)} values (max: {MAX_ENUM_VALUES})")


def validate_schema(text: str) -> SchemaValidationResult:
    """Validate custom schema JSON text. Empty text is valid and means no schema."""
    if not text.strip():
        return SchemaValidationResult(valid=True)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        return SchemaValidationResult(
            valid=False, error=f"JSON syntax error (line {e.lineno}, column {e.colno}): {e.msg}",
        )

    if not isinstance(parsed, dict):
        kind = "array" if isinstance(parsed, list) else type(parsed).__name__
        return SchemaValidationResult(valid=False, error=f"Schema must be a JSON object, not {kind}")

    name = parsed.get("name")
    if not isinstance(name, str):
        return SchemaValidationResult(valid=False, error="Missing required 'name' property (string)")
    if not name.strip():
        return SchemaValidationResult(valid=False, error="'name' cannot be empty")
    if not _IDENTIFIER_RE.match(name):
        return SchemaValidationResult(
            valid=False,
            error=f"'name' must be a valid identifier (got '{name}'). "
                  "Use letters, numbers, underscores; start with letter or underscore.",
        )

    value = parsed.get("value")
    if not isinstance(value, dict):
        return SchemaValidationResult(
            valid=False, error="Missing or invalid 'value' property (must be object)",
        )
    if not isinstance(value.get("type"), str) and not any(k in value for k in ("anyOf", "allOf", "$ref")):
        return SchemaValidationResult(
            valid=False, error="'value' must have a 'type', 'anyOf', 'allOf', or '$ref'",
        )

    strict = parsed.get("strict", True)
    if not isinstance(strict, bool):
        return SchemaValidationResult(valid=False, error="'strict' must be a boolean if provided")

    defs = value.get("$defs") or value.get("definitions") or {}
    walk = _Walk(defs if isinstance(defs, dict) else {})
    if len(walk.defs) > MAX_DEFS:
        walk.errors.append(f"Too many definitions: {len(walk.defs)} (limit: {MAX_DEFS})")
    walk.node(value, "value")

    if walk.optional_count > 10:
        walk.warnings.append(
            f"{walk.optional_count} optional fields detected. Each spawns an implicit anyOf "
            "with null. Consider making fields required or reducing optionals."
        )

    if walk.errors:
        return SchemaValidationResult(
            valid=False, error="\n".join(walk.errors), warnings=walk.warnings,
        )

    walk.info.append(
        f"Schema stats: {walk.property_count} properties, {len(walk.defs)} definitions, "
        f"{walk.anyof_count} anyOf blocks, {walk.optional_count} optional fields, "
        f"max depth {walk.max_depth}"
    )
    return SchemaValidationResult(
        valid=True,
        parsed=StructuredOutputSchema(name=name, strict=strict, value=value),
        warnings=walk.warnings,
        info=walk.info,
    )
