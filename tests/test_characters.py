"""Tests for character_tools.characters — field extraction and summaries."""

from character_tools.characters import (
    build_character_summary,
    build_compact_summary,
    field_preview,
    get_populated_fields,
    search_characters,
    validate_character,
)
from character_tools.models import Character


def _char(**kwargs) -> Character:
    return Character(name=kwargs.pop("name", "Mira"), **kwargs)


class TestPopulatedFields:
    def test_flat_fields_in_display_order(self) -> None:
        char = _char(personality="Stubborn", description="A smith", scenario="  ")
        fields = get_populated_fields(char)
        assert [f.key for f in fields] == ["description", "personality"]
        assert fields[0].label == "Description"
        assert fields[0].char_count == len("A smith")

    def test_nested_v2_data(self) -> None:
        char = Character.model_validate({
            "name": "Mira",
            "data": {"description": "From data", "first_mes": "Hello."},
        })
        fields = {f.key: f.value for f in get_populated_fields(char)}
        assert fields == {"description": "From data", "first_mes": "Hello."}

    def test_legacy_creator_comment(self) -> None:
        char = Character.model_validate({"name": "Mira", "creatorcomment": "Made by me"})
        fields = get_populated_fields(char)
        assert fields[0].key == "creator_notes"
        assert not fields[0].scoreable

    def test_values_stripped(self) -> None:
        assert get_populated_fields(_char(description="  padded \n"))[0].value == "padded"


class TestSummaries:
    def test_character_summary(self) -> None:
        char = _char(description="A smith", first_mes="Hi there.")
        assert build_character_summary(char) == (
            "# CHARACTER: Mira\n\n### Description\nA smith\n\n### First Message\nHi there."
        )

    def test_compact_summary(self) -> None:
        char = _char(description="x" * 1000, personality="y" * 500)
        assert build_compact_summary(char) == "Mira - 2 fields, 1,500 chars"

    def test_field_preview(self) -> None:
        assert field_preview("short") == "short"
        assert field_preview("abcdefghij", max_length=6) == "abc..."


class TestValidateCharacter:
    def test_usable(self) -> None:
        assert validate_character(_char(description="A smith")) == []

    def test_empty(self) -> None:
        assert validate_character(_char(name=" ")) == [
            "Character has no name",
            "Character has no populated fields",
        ]


class TestSearch:
    def test_name_matches_first(self) -> None:
        chars = [
            _char(name="Bob", description="Friend of mira"),
            _char(name="Mira"),
            _char(name=""),
        ]
        results = search_characters(chars, "MIRA")
        assert [i for i, _ in results] == [1, 0]

    def test_empty_query_lists_named(self) -> None:
        chars = [_char(name="A"), _char(name=""), _char(name="B")]
        assert [i for i, _ in search_characters(chars, " ")] == [0, 2]

    def test_limit(self) -> None:
        chars = [_char(name=f"Mira {i}") for i in range(5)]
        assert len(search_characters(chars, "mira", limit=3)) == 3
