"""Character card field extraction and prompt formatting.

Cards come in two shapes: flat (fields at the top level) and v2 (fields
nested under "data"). Both are read. The legacy "creatorcomment" key stands
in for creator_notes when the latter is empty.

Summary format used in prompts:

    # CHARACTER: {name}

    ### Description
    ...

    ### First Message
    ...
"""

from typing import Any

from pydantic import BaseModel

from .models import Character

# (key, label, scoreable)
CHARACTER_FIELDS: tuple[tuple[str, str, bool], ...] = (
    ("description", "Description", True),
    ("personality", "Personality", True),
    ("first_mes", "First Message", True),
    ("scenario", "Scenario", True),
    ("mes_example", "Example Messages", True),
    ("system_prompt", "System Prompt", True),
    ("post_history_instructions", "Post-History Instructions", False),
    ("creator_notes", "Creator Notes", False),
)

FIELD_LABELS = {key: label for key, label, _ in CHARACTER_FIELDS}


class PopulatedField(BaseModel):
    key: str
    label: str
    value: str
    char_count: int
    scoreable: bool = True


def _raw_value(char: Character, key: str) -> Any:
    value = getattr(char, key, None)
    if isinstance(value, str) and value.strip():
        return value
    data = (char.model_extra or {}).get("data")
    if isinstance(data, dict):
        nested = data.get(key)
        if isinstance(nested, str) and nested.strip():
            return nested
    if key == "creator_notes":
        legacy = (char.model_extra or {}).get("creatorcomment")
        if isinstance(legacy, str) and legacy.strip():
            return legacy
    return value


def get_populated_fields(char: Character) -> list[PopulatedField]:
    """Fields with non-blank text, in display order."""
    fields = []
    for key, label, scoreable in CHARACTER_FIELDS:
        value = _raw_value(char, key)
        if not isinstance(value, str) or not value.strip():
            continue
        text = value.strip()
        fields.append(PopulatedField(
            key=key, label=label, value=text, char_count=len(text), scoreable=scoreable,
        ))
    return fields


def build_character_summary(char: Character) -> str:
    sections = [f"### {f.label}\n{f.value}" for f in get_populated_fields(char)]
    return f"# CHARACTER: {char.name}\n\n" + "\n\n".join(sections)


def build_compact_summary(char: Character) -> str:
    fields = get_populated_fields(char)
    total = sum(f.char_count for f in fields)
    return f"{char.name} - {len(fields)} fields, {total:,} chars"


def field_preview(value: str, max_length: int = 100) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length - 3] + "..."


def validate_character(char: Character) -> list[str]:
    """Reasons a character can't be worked on. Empty list means usable."""
    issues = []
    if not char.name.strip():
        issues.append("Character has no name")
    if not get_populated_fields(char):
        issues.append("Character has no populated fields")
    return issues


def search_characters(chars: list[Character], query: str, limit: int = 10) -> list[tuple[int, Character]]:
    """Case-insensitive substring search over name, description and personality.

    Returns (index, character) pairs, name matches first.
    """
    needle = query.strip().lower()
    if not needle:
        return [(i, c) for i, c in enumerate(chars) if c.name][:limit]

    by_name: list[tuple[int, Character]] = []
    by_text: list[tuple[int, Character]] = []
    for i, char in enumerate(chars):
        if not char.name:
            continue
        if needle in char.name.lower():
            by_name.append((i, char))
            continue
        haystack = " ".join([char.description[:200], char.personality[:100]]).lower()
        if needle in haystack:
            by_text.append((i, char))
    return (by_name + by_text)[:limit]
