"""Generation entry points for stages and refinement.

    run_stage_generation       prompt + schema for one stage → executor →
                               structured validation
    run_refinement_generation  refinement prompt → executor (free text)

Both return a GenerationResult and never raise. Configuration problems (no
character, no prompt, refinement prerequisites unmet) come back as failures
before the transport is touched. A token that is already cancelled
short-circuits before anything else.

The caller writes the outcome back with complete_stage/fail_stage or
complete_refinement/abort_refinement; successful results carry the prompt
and schema that were sent so the stored result records them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..cancellation import CANCELLED_MESSAGE, CancellationToken
from ..config import Settings
from ..executor import execute_generation
from ..llm import GenerationTransport
from ..models import GenerationFailure, GenerationResult, PipelineState, StageName
from ..presets import PresetStore
from ..structured import validate_structured_output
from .refinement import build_refinement_prompt, validate_refinement
from .state import build_stage_prompt, get_stage_schema

logger = logging.getLogger(__name__)

NO_PROMPT_MESSAGE = "No prompt configured for this stage"
NO_REFINEMENT_PROMPT_MESSAGE = "No refinement prompt configured"


@dataclass
class GenerationContext:
    """Everything a generation needs besides the state snapshot."""

    transport: GenerationTransport
    presets: PresetStore
    settings: Settings
    substitute: Callable[[str], str] | None = None

    @property
    def user_name(self) -> str:
        return self.settings.user_name or "User"


async def run_stage_generation(
    state: PipelineState,
    stage: StageName,
    token: CancellationToken,
    ctx: GenerationContext,
) -> GenerationResult:
    if token.cancelled:
        return GenerationFailure(error=CANCELLED_MESSAGE)
    if state.character is None:
        return GenerationFailure(error="No character selected")

    user_prompt = build_stage_prompt(state, stage, ctx.presets, ctx.user_name, ctx.substitute)
    if not user_prompt:
        return GenerationFailure(error=NO_PROMPT_MESSAGE)
    schema = get_stage_schema(state, stage, ctx.presets)

    logger.info(
        "stage generation stage=%s character=%s host_default=%s schema=%s prompt_len=%d",
        stage, state.character.name, ctx.settings.use_current_settings,
        schema.name if schema else None, len(user_prompt),
    )
    result = await execute_generation(
        ctx.transport,
        ctx.settings.system_prompt,
        user_prompt,
        schema,
        token,
        ctx.settings.use_current_settings,
    )
    if isinstance(result, GenerationFailure):
        return result

    if schema is not None:
        result = validate_structured_output(result.response, schema)
    return result.model_copy(update={"prompt_used": user_prompt, "schema_used": schema})


async def run_refinement_generation(
    state: PipelineState,
    token: CancellationToken,
    ctx: GenerationContext,
) -> GenerationResult:
    if token.cancelled:
        return GenerationFailure(error=CANCELLED_MESSAGE)

    validation = validate_refinement(state)
    if not validation.valid:
        return GenerationFailure(error=validation.errors[0])

    prompt = build_refinement_prompt(
        state, ctx.settings.refinement_prompt, ctx.user_name, ctx.substitute,
    )
    if not prompt or not prompt.strip():
        return GenerationFailure(error=NO_REFINEMENT_PROMPT_MESSAGE)

    logger.info(
        "refinement generation iteration=%d prompt_len=%d",
        state.iteration_count + 1, len(prompt),
    )
    result = await execute_generation(
        ctx.transport,
        ctx.settings.system_prompt,
        prompt,
        None,
        token,
        ctx.settings.use_current_settings,
    )
    if isinstance(result, GenerationFailure):
        return result
    return result.model_copy(update={"prompt_used": prompt})
