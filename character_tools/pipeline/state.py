"""Stage pipeline state machine.

Status transitions per stage:

    pending ─┐
    failed  ─┼─ start_stage ─→ running ─┬─ complete_stage ─→ complete
    complete ┘                          └─ fail_stage     ─→ failed
    any ─ skip_stage ─→ skipped
    any ─ clear_stage_result ─→ pending

A stage may run once its predecessor in STAGES is complete or skipped. A
locked result blocks start_stage/complete_stage until it is unlocked; those
calls hand back the state unchanged rather than raising.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import BaseModel

from ..characters import get_populated_fields
from ..models import (
    STAGE_LABELS,
    STAGES,
    Character,
    IterationVerdict,
    PipelineState,
    PipelineValidation,
    RunCheck,
    StageConfig,
    StageName,
    StageResult,
    StageStatus,
    StructuredOutputSchema,
)
from ..presets import DEFAULT_STAGE_DEFAULTS, PresetStore, resolve_prompt, resolve_schema
from ..prompts import PromptError, build_context, build_structured_prompt, render_prompt, uses_placeholder

logger = logging.getLogger(__name__)

StageDefaults = dict[StageName, StageConfig]


def _order(stages: Iterable[StageName]) -> list[StageName]:
    chosen = set(stages)
    return [s for s in STAGES if s in chosen]


def with_stage(mapping: dict[StageName, Any], stage: StageName, value: Any) -> dict[StageName, Any]:
    updated = dict(mapping)
    updated[stage] = value
    return updated


def predecessor(stage: StageName) -> StageName | None:
    idx = STAGES.index(stage)
    return STAGES[idx - 1] if idx > 0 else None


# ── Creation and character ───────────────────────────────


def create_pipeline_state(stage_defaults: StageDefaults | None = None) -> PipelineState:
    defaults = stage_defaults or DEFAULT_STAGE_DEFAULTS
    return PipelineState(
        configs={stage: defaults[stage].model_copy() for stage in STAGES},
    )


def reset_pipeline(
    state: PipelineState,
    keep_character: bool = False,
    stage_defaults: StageDefaults | None = None,
) -> PipelineState:
    fresh = create_pipeline_state(stage_defaults)
    if keep_character and state.character is not None:
        fresh = fresh.model_copy(update={
            "character": state.character,
            "character_index": state.character_index,
        })
    logger.debug("pipeline reset keep_character=%s", keep_character)
    return fresh


def set_character(
    state: PipelineState, character: Character | None, index: int | None
) -> PipelineState:
    """Select a character. Everything generated for the previous one is dropped."""
    if index is not None and state.character_index == index:
        return state

    logger.debug(
        "character set name=%s index=%s fields=%d",
        character.name if character else None, index,
        len(get_populated_fields(character)) if character else 0,
    )
    fresh = PipelineState()
    return state.model_copy(update={
        "character": character,
        "character_index": index,
        "results": fresh.results,
        "stage_status": fresh.stage_status,
        "stage_errors": fresh.stage_errors,
        "current_stage": None,
        "iteration_count": 0,
        "iteration_history": [],
        "is_refining": False,
        "refinement_checkpoint": None,
        "rewrite_accepted": False,
        "export_data": None,
    })


# ── Selection and configuration ──────────────────────────


def toggle_stage(state: PipelineState, stage: StageName) -> PipelineState:
    selected = set(state.selected_stages)
    if stage in selected:
        selected.remove(stage)
    else:
        selected.add(stage)
    ordered = _order(selected)
    logger.debug("stage toggled stage=%s selected=%s", stage, ordered)
    return state.model_copy(update={"selected_stages": ordered})


def set_selected_stages(state: PipelineState, stages: Iterable[StageName]) -> PipelineState:
    return state.model_copy(update={"selected_stages": _order(stages)})


def select_all_stages(state: PipelineState) -> PipelineState:
    return state.model_copy(update={"selected_stages": list(STAGES)})


def update_stage_config(state: PipelineState, stage: StageName, **updates: Any) -> PipelineState:
    """Merge updates into one stage's config. Unknown keys raise ValueError."""
    unknown = set(updates) - set(StageConfig.model_fields)
    if unknown:
        raise ValueError(f"Unknown stage config fields: {sorted(unknown)}")
    merged = StageConfig.model_validate({**state.configs[stage].model_dump(), **updates})
    return state.model_copy(update={"configs": with_stage(state.configs, stage, merged)})


def reset_stage_config(
    state: PipelineState, stage: StageName, stage_defaults: StageDefaults | None = None
) -> PipelineState:
    defaults = stage_defaults or DEFAULT_STAGE_DEFAULTS
    return state.model_copy(update={
        "configs": with_stage(state.configs, stage, defaults[stage].model_copy()),
    })


# ── Gating ───────────────────────────────────────────────


def can_run_stage(state: PipelineState, stage: StageName) -> RunCheck:
    if state.character is None:
        return RunCheck(can_run=False, reason="No character selected")

    if state.stage_status[stage] == "running":
        return RunCheck(can_run=False, reason=f"{STAGE_LABELS[stage]} is already running")

    result = state.results[stage]
    if result is not None and result.locked:
        return RunCheck(
            can_run=False,
            reason=f"{STAGE_LABELS[stage]} result is locked - unlock it to regenerate",
        )

    prev = predecessor(stage)
    if prev is not None and state.stage_status[prev] not in ("complete", "skipped"):
        return RunCheck(
            can_run=False,
            reason=f"{STAGE_LABELS[prev]} must be complete or skipped before {STAGE_LABELS[stage]}",
        )

    warnings = []
    if state.stage_status[stage] == "complete":
        warnings.append("Stage already complete - running again will overwrite the result")
    if prev is not None and state.stage_status[prev] == "skipped":
        warnings.append(
            f"{STAGE_LABELS[prev]} was skipped - {STAGE_LABELS[stage]} will run without its output"
        )
    return RunCheck(can_run=True, reason="; ".join(warnings) or None)


# ── Transitions ──────────────────────────────────────────


def start_stage(state: PipelineState, stage: StageName) -> PipelineState:
    result = state.results[stage]
    if result is not None and result.locked:
        logger.warning("start_stage refused: %s result is locked", stage)
        return state
    if state.stage_status[stage] == "running":
        logger.warning("start_stage refused: %s is already running", stage)
        return state

    logger.debug("stage started stage=%s", stage)
    return state.model_copy(update={
        "current_stage": stage,
        "stage_status": with_stage(state.stage_status, stage, "running"),
        "stage_errors": with_stage(state.stage_errors, stage, None),
    })


def complete_stage(
    state: PipelineState,
    stage: StageName,
    response: str,
    is_structured: bool,
    prompt_used: str,
    schema_used: StructuredOutputSchema | None = None,
) -> PipelineState:
    """Store a stage result stamped with the prompt and schema actually sent."""
    existing = state.results[stage]
    if existing is not None and existing.locked:
        logger.warning("complete_stage refused: %s result is locked", stage)
        return state

    result = StageResult(
        response=response,
        is_structured=is_structured,
        prompt_used=prompt_used,
        schema_used=schema_used,
    )
    logger.info(
        "stage complete stage=%s len=%d structured=%s", stage, len(response), is_structured,
    )
    return state.model_copy(update={
        "current_stage": None,
        "stage_status": with_stage(state.stage_status, stage, "complete"),
        "results": with_stage(state.results, stage, result),
        "stage_errors": with_stage(state.stage_errors, stage, None),
    })


def fail_stage(state: PipelineState, stage: StageName, error: str) -> PipelineState:
    existing = state.results[stage]
    if existing is not None and existing.locked:
        logger.warning("fail_stage ignored: %s result is locked", stage)
        return state.model_copy(update={"current_stage": None})

    logger.info("stage failed stage=%s error=%s", stage, error)
    return state.model_copy(update={
        "current_stage": None,
        "stage_status": with_stage(state.stage_status, stage, "failed"),
        "results": with_stage(state.results, stage, None),
        "stage_errors": with_stage(state.stage_errors, stage, error),
    })


def skip_stage(state: PipelineState, stage: StageName) -> PipelineState:
    logger.debug("stage skipped stage=%s", stage)
    return state.model_copy(update={
        "stage_status": with_stage(state.stage_status, stage, "skipped"),
    })


def _set_locked(state: PipelineState, stage: StageName, locked: bool) -> PipelineState:
    result = state.results[stage]
    if result is None:
        return state
    logger.debug("stage %s stage=%s", "locked" if locked else "unlocked", stage)
    return state.model_copy(update={
        "results": with_stage(state.results, stage, result.model_copy(update={"locked": locked})),
    })


def lock_stage_result(state: PipelineState, stage: StageName) -> PipelineState:
    return _set_locked(state, stage, True)


def unlock_stage_result(state: PipelineState, stage: StageName) -> PipelineState:
    return _set_locked(state, stage, False)


def clear_stage_result(state: PipelineState, stage: StageName) -> PipelineState:
    logger.debug("stage result cleared stage=%s", stage)
    return state.model_copy(update={
        "results": with_stage(state.results, stage, None),
        "stage_status": with_stage(state.stage_status, stage, "pending"),
        "stage_errors": with_stage(state.stage_errors, stage, None),
    })


# ── Queries ──────────────────────────────────────────────


def get_next_stage(state: PipelineState, current: StageName) -> StageName | None:
    """Next selected stage after current that still has work to do."""
    for stage in STAGES[STAGES.index(current) + 1:]:
        if stage in state.selected_stages and state.stage_status[stage] not in ("complete", "skipped"):
            return stage
    return None


def get_previous_stage(state: PipelineState, current: StageName) -> StageName | None:
    earlier = [s for s in STAGES[:STAGES.index(current)] if s in state.selected_stages]
    return earlier[-1] if earlier else None


def get_first_incomplete_stage(state: PipelineState) -> StageName | None:
    for stage in state.selected_stages:
        if state.stage_status[stage] in ("pending", "running", "failed"):
            return stage
    return None


def is_pipeline_complete(state: PipelineState) -> bool:
    return all(state.stage_status[s] in ("complete", "skipped") for s in state.selected_stages)


def can_export(state: PipelineState) -> bool:
    return state.results["rewrite"] is not None


def has_stage_result(state: PipelineState, stage: StageName) -> bool:
    return state.results[stage] is not None


def is_stage_result_locked(state: PipelineState, stage: StageName) -> bool:
    result = state.results[stage]
    return result is not None and result.locked


def get_stage_result(state: PipelineState, stage: StageName) -> StageResult | None:
    return state.results[stage]


class PipelineSummary(BaseModel):
    has_character: bool
    character_name: str | None
    selected_stages: list[StageName]
    stage_status: dict[StageName, StageStatus]
    completed_stages: list[StageName]
    locked_stages: list[StageName]
    current_stage: StageName | None
    can_export: bool
    is_complete: bool
    iteration_count: int
    is_refining: bool
    last_verdict: IterationVerdict | None
    rewrite_accepted: bool


def get_pipeline_summary(state: PipelineState) -> PipelineSummary:
    last = state.iteration_history[-1] if state.iteration_history else None
    return PipelineSummary(
        has_character=state.character is not None,
        character_name=state.character.name if state.character else None,
        selected_stages=list(state.selected_stages),
        stage_status=dict(state.stage_status),
        completed_stages=[s for s in STAGES if state.stage_status[s] == "complete"],
        locked_stages=[s for s in STAGES if is_stage_result_locked(state, s)],
        current_stage=state.current_stage,
        can_export=can_export(state),
        is_complete=is_pipeline_complete(state),
        iteration_count=state.iteration_count,
        is_refining=state.is_refining,
        last_verdict=last.verdict if last else None,
        rewrite_accepted=state.rewrite_accepted,
    )


def validate_pipeline(state: PipelineState, presets: PresetStore) -> PipelineValidation:
    errors: list[str] = []
    warnings: list[str] = []

    if state.character is None:
        errors.append("No character selected")
    if not state.selected_stages:
        errors.append("No stages selected")

    selected = state.selected_stages
    for stage in selected:
        if resolve_prompt(state.configs[stage], presets) is None:
            errors.append(f"{stage}: No prompt configured")

    has_score = "score" in selected or state.results["score"] is not None
    if "analyze" in selected and "rewrite" not in selected and state.results["rewrite"] is None:
        errors.append("Analyze requires rewrite results")
    if "rewrite" in selected and not has_score:
        warnings.append("Rewrite will run without score feedback")
    if "analyze" in selected and not has_score:
        warnings.append("Analyze will run without score feedback for reference")

    return PipelineValidation(valid=not errors, errors=errors, warnings=warnings)


# ── Prompt and schema resolution ─────────────────────────


def render_template(
    template: str,
    state: PipelineState,
    user_name: str = "User",
    substitute: Callable[[str], str] | None = None,
) -> str:
    """Host macros first, then Handlebars. A broken template is sent unrendered."""
    text = substitute(template) if substitute else template
    try:
        return render_prompt(text, build_context(state, user_name))
    except PromptError as e:
        logger.warning("prompt template failed, sending unrendered: %s", e)
        return text


def build_stage_prompt(
    state: PipelineState,
    stage: StageName,
    presets: PresetStore,
    user_name: str = "User",
    substitute: Callable[[str], str] | None = None,
) -> str | None:
    """The user prompt for a stage, or None when no prompt resolves.

    Templates that don't place {{original_character}} themselves get the
    character and the earlier stage outputs prepended.
    """
    if state.character is None:
        return None
    base = resolve_prompt(state.configs[stage], presets)
    if base is None or not base.strip():
        return None

    rendered = render_template(base, state, user_name, substitute)
    if uses_placeholder(base, "original_character"):
        return rendered

    logger.debug("no character placeholder in %s prompt, prepending character data", stage)
    summary = build_context(state, user_name)["original_character"]
    return build_structured_prompt(stage, state, summary, rendered)


def get_stage_schema(
    state: PipelineState, stage: StageName, presets: PresetStore
) -> StructuredOutputSchema | None:
    return resolve_schema(state.configs[stage], presets)
