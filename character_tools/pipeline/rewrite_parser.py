"""Split a rewrite response back into character card fields.

Tried in order, first non-empty wins:

  json       object of field → text, bare or inside a ``` block
  markdown   ## / ### headers, each header's body is one field
  heuristic  "**Label:**", "Label:" or "[Label]" markers for known fields
  raw        the whole response as a single "content" field
"""

from __future__ import annotations

import json
import re
from typing import Literal

from pydantic import BaseModel

from ..characters import CHARACTER_FIELDS, FIELD_LABELS
from ..models import Character

ParseMethod = Literal["json", "markdown", "heuristic", "raw"]

_HEADER_RE = re.compile(r"^#{2,3}\s+(.+?)$", re.MULTILINE)
_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_SKIP_HEADERS = ("summary", "notes", "changes", "revised", "original")


class ParsedField(BaseModel):
    key: str
    label: str
    value: str


class ParsedRewrite(BaseModel):
    fields: list[ParsedField]
    raw: str
    parse_method: ParseMethod


def _known_field(text: str) -> tuple[str, str] | None:
    lowered = text.strip().lower()
    as_key = re.sub(r"\s+", "_", lowered)
    for key, label, _ in CHARACTER_FIELDS:
        if lowered == label.lower() or as_key == key:
            return key, label
    return None


def _label_from_key(key: str) -> str:
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", key.replace("_", " "))
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def _parse_json(response: str) -> list[ParsedField] | None:
    try:
        data = json.loads(response)
    except json.JSONDecodeError:
        block = _CODE_BLOCK_RE.search(response)
        if block is None:
            return None
        try:
            data = json.loads(block.group(1).strip())
        except json.JSONDecodeError:
            return None
    if not isinstance(data, dict):
        return None

    fields = []
    for key, value in data.items():
        if not isinstance(value, str) or not value.strip():
            continue
        known = _known_field(key)
        fields.append(ParsedField(
            key=known[0] if known else key,
            label=known[1] if known else _label_from_key(key),
            value=value.strip(),
        ))
    return fields or None


def _parse_markdown(response: str) -> list[ParsedField] | None:
    matches = list(_HEADER_RE.finditer(response))
    fields = []
    for i, match in enumerate(matches):
        header = match.group(1).strip()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(response)
        content = response[match.end():end].strip()
        if not content:
            continue
        known = _known_field(header)
        if known is None and any(s in header.lower() for s in _SKIP_HEADERS):
            continue
        fields.append(ParsedField(
            key=known[0] if known else re.sub(r"\s+", "_", header.lower()),
            label=known[1] if known else header,
            value=content,
        ))
    return fields or None


def _parse_heuristic(response: str) -> list[ParsedField] | None:
    fields = []
    for key, label, _ in CHARACTER_FIELDS:
        name = re.escape(label)
        patterns = (
            rf"\*\*{name}:\*\*\s*([\s\S]*?)(?=\*\*[A-Z]|$)",
            rf"{name}:\s*([\s\S]*?)(?=\n[A-Z][a-z]+:|$)",
            rf"\[{name}\]\s*([\s\S]*?)(?=\[[A-Z]|$)",
        )
        for pattern in patterns:
            match = re.search(pattern, response, re.IGNORECASE)
            if match and match.group(1).strip():
                fields.append(ParsedField(key=key, label=label, value=match.group(1).strip()))
                break
    return fields or None


def parse_rewrite_response(response: str) -> ParsedRewrite:
    for method, parser in (
        ("json", _parse_json),
        ("markdown", _parse_markdown),
        ("heuristic", _parse_heuristic),
    ):
        fields = parser(response)
        if fields:
            return ParsedRewrite(fields=fields, raw=response, parse_method=method)
    return ParsedRewrite(
        fields=[ParsedField(key="content", label="Content", value=response.strip())],
        raw=response,
        parse_method="raw",
    )


def apply_rewrite_fields(character: Character, fields: list[ParsedField]) -> tuple[Character, list[str]]:
    """Copy parsed values for known card fields onto a new character.

    Returns the updated character and the labels of the fields changed.
    Unknown keys (headers that aren't card fields) are ignored.
    """
    updates = {}
    changed = []
    for field in fields:
        if field.key in FIELD_LABELS and field.value.strip():
            updates[field.key] = field.value.strip()
            changed.append(FIELD_LABELS[field.key])
    return character.model_copy(update=updates), changed
