"""Tests for run_stage_generation and run_refinement_generation with a mocked transport."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from character_tools.cancellation import CANCELLED_MESSAGE, CancellationToken
from character_tools.config import Settings
from character_tools.models import Character, GenerationFailure, GenerationSuccess, PipelineState
from character_tools.pipeline.generation import (
    NO_PROMPT_MESSAGE,
    NO_REFINEMENT_PROMPT_MESSAGE,
    GenerationContext,
    run_refinement_generation,
    run_stage_generation,
)
from character_tools.pipeline.state import (
    complete_stage,
    create_pipeline_state,
    set_character,
    start_stage,
    update_stage_config,
)
from character_tools.presets import InMemoryPresetStore

MIRA = Character(name="Mira", description="A blacksmith with a temper.")

SCORE_JSON = json.dumps({
    "fieldScores": [],
    "overallScore": 6,
    "priorityImprovements": ["voice"],
    "summary": "ok",
})


def _ctx(response: str = "A response", **settings) -> GenerationContext:
    transport = MagicMock()
    transport.generate = AsyncMock(return_value=response)
    return GenerationContext(
        transport=transport,
        presets=InMemoryPresetStore(),
        settings=Settings(**settings),
    )


def _run(state: PipelineState, stage: str, text: str) -> PipelineState:
    return complete_stage(start_stage(state, stage), stage, text, False, "prompt")


@pytest.fixture
def state() -> PipelineState:
    return set_character(create_pipeline_state(), MIRA, 0)


@pytest.fixture
def ready(state: PipelineState) -> PipelineState:
    state = _run(state, "score", "Score: 5/10")
    state = _run(state, "rewrite", "Rewrite v0")
    return _run(state, "analyze", "Verdict: NEEDS_REFINEMENT")


def _cancelled() -> CancellationToken:
    token = CancellationToken()
    token.cancel()
    return token


# ---------------------------------------------------------------------------
# Stage generation
# ---------------------------------------------------------------------------

class TestRunStageGeneration:
    async def test_success_records_prompt(self, state: PipelineState) -> None:
        ctx = _ctx("Score: 7/10")
        result = await run_stage_generation(state, "score", CancellationToken(), ctx)
        assert isinstance(result, GenerationSuccess)
        assert result.response == "Score: 7/10"
        assert not result.is_structured
        assert result.schema_used is None
        assert "# CHARACTER: Mira" in result.prompt_used

    async def test_transport_arguments(self, state: PipelineState) -> None:
        ctx = _ctx(system_prompt="Be precise.", use_current_settings=False)
        token = CancellationToken()
        result = await run_stage_generation(state, "score", token, ctx)
        ctx.transport.generate.assert_awaited_once_with(
            "Be precise.", result.prompt_used, None, token, False,
        )

    async def test_structured_output_valid(self, state: PipelineState) -> None:
        structured = update_stage_config(state, "score", use_structured_output=True)
        result = await run_stage_generation(structured, "score", CancellationToken(), _ctx(SCORE_JSON))
        assert result.is_structured
        assert result.schema_used.name == "CharacterScore"
        assert result.prompt_used

    async def test_structured_output_wrong_shape_still_succeeds(self, state: PipelineState) -> None:
        structured = update_stage_config(state, "score", use_structured_output=True)
        result = await run_stage_generation(
            structured, "score", CancellationToken(), _ctx("Score: 7/10")
        )
        assert result.success
        assert not result.is_structured
        assert result.response == "Score: 7/10"

    async def test_pre_cancelled_makes_no_transport_call(self, state: PipelineState) -> None:
        ctx = _ctx()
        result = await run_stage_generation(state, "score", _cancelled(), ctx)
        assert result == GenerationFailure(error=CANCELLED_MESSAGE)
        ctx.transport.generate.assert_not_called()

    async def test_no_character(self) -> None:
        ctx = _ctx()
        result = await run_stage_generation(create_pipeline_state(), "score", CancellationToken(), ctx)
        assert result == GenerationFailure(error="No character selected")
        ctx.transport.generate.assert_not_called()

    async def test_no_prompt(self, state: PipelineState) -> None:
        ctx = _ctx()
        broken = update_stage_config(state, "score", prompt_preset_id="gone")
        result = await run_stage_generation(broken, "score", CancellationToken(), ctx)
        assert result == GenerationFailure(error=NO_PROMPT_MESSAGE)
        ctx.transport.generate.assert_not_called()

    async def test_transport_failure(self, state: PipelineState) -> None:
        ctx = _ctx()
        ctx.transport.generate.side_effect = RuntimeError("API error: overloaded")
        result = await run_stage_generation(state, "score", CancellationToken(), ctx)
        assert result == GenerationFailure(error="API error: overloaded")

    async def test_user_name_in_prompt(self, state: PipelineState) -> None:
        custom = update_stage_config(state, "score", custom_prompt="{{original_character}} for {{user}}")
        result = await run_stage_generation(custom, "score", CancellationToken(), _ctx(user_name="Alex"))
        assert result.prompt_used.endswith("for Alex")


# ---------------------------------------------------------------------------
# Refinement generation
# ---------------------------------------------------------------------------

class TestRunRefinementGeneration:
    async def test_success(self, ready: PipelineState) -> None:
        ctx = _ctx("Rewrite v1")
        result = await run_refinement_generation(ready, CancellationToken(), ctx)
        assert result.response == "Rewrite v1"
        assert not result.is_structured
        assert "Rewrite v0" in result.prompt_used
        assert ctx.transport.generate.call_args[0][2] is None

    async def test_pre_cancelled(self, ready: PipelineState) -> None:
        ctx = _ctx()
        result = await run_refinement_generation(ready, _cancelled(), ctx)
        assert result == GenerationFailure(error=CANCELLED_MESSAGE)
        ctx.transport.generate.assert_not_called()

    async def test_missing_analysis(self, state: PipelineState) -> None:
        ctx = _ctx()
        result = await run_refinement_generation(_run(state, "rewrite", "R"), CancellationToken(), ctx)
        assert result == GenerationFailure(error="Run analyze first to identify issues")
        ctx.transport.generate.assert_not_called()

    async def test_empty_refinement_prompt(self, ready: PipelineState) -> None:
        ctx = _ctx(refinement_prompt="   ")
        result = await run_refinement_generation(ready, CancellationToken(), ctx)
        assert result == GenerationFailure(error=NO_REFINEMENT_PROMPT_MESSAGE)
