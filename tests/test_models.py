"""Tests for character_tools.models — defaults, immutability, serialisation."""

import pytest
from pydantic import ValidationError

from character_tools.cancellation import CancellationToken, GenerationAborted
from character_tools.models import (
    STAGES,
    Character,
    GenerationFailure,
    GenerationSuccess,
    PipelineState,
    StageResult,
    StructuredOutputSchema,
)


class TestPipelineState:
    def test_every_stage_has_entries(self) -> None:
        state = PipelineState()
        for mapping in (state.configs, state.stage_status, state.results, state.stage_errors):
            assert set(mapping) == set(STAGES)

    def test_frozen(self) -> None:
        state = PipelineState()
        with pytest.raises(ValidationError):
            state.iteration_count = 3

    def test_round_trips_through_json(self) -> None:
        result = StageResult(response="R", prompt_used="P")
        state = PipelineState(
            character=Character(name="Mira"),
            results={"score": None, "rewrite": result, "analyze": None},
        )
        assert PipelineState.model_validate_json(state.model_dump_json()) == state


class TestCharacter:
    def test_unknown_keys_preserved(self) -> None:
        char = Character.model_validate({"name": "Mira", "tags": ["smith"], "data": {"x": 1}})
        assert char.model_dump()["tags"] == ["smith"]

    def test_name_required(self) -> None:
        with pytest.raises(ValidationError):
            Character.model_validate({"description": "nameless"})


class TestGenerationResult:
    def test_success_and_failure_discriminate(self) -> None:
        assert GenerationSuccess(response="x").success is True
        assert GenerationFailure(error="y").success is False

    def test_stage_result_timestamp_is_utc(self) -> None:
        assert StageResult(response="x").timestamp.endswith("+00:00")


class TestStructuredOutputSchema:
    def test_required_fields(self) -> None:
        schema = StructuredOutputSchema(name="S", value={"required": ["a", 2, "b"]})
        assert schema.required_fields() == ["a", "b"]

    def test_no_required(self) -> None:
        assert StructuredOutputSchema(name="S", value={}).required_fields() == []


class TestCancellationToken:
    def test_one_shot(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(GenerationAborted):
            token.raise_if_cancelled()
