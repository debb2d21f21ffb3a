"""Refinement loop.

Once a rewrite and its analysis exist, refinement regenerates the rewrite
from (original, current rewrite, analysis). Each completed refinement is
recorded as an IterationSnapshot so the user can revert to it:

    start_refinement     checkpoint (iteration_count, iteration_history),
                         is_refining=True
    complete_refinement  snapshot[count] = (analysed rewrite, its analysis,
                         verdict), count += 1, rewrite = refined text,
                         analyze back to pending
    abort_refinement     restore the checkpoint exactly
    revert_to_iteration  history[:i+1], count = i+1, rewrite = snapshot[i]

len(iteration_history) == iteration_count holds after every completion,
abort and revert.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Protocol

from ..models import (
    PREVIEW_LENGTH,
    IterationSnapshot,
    IterationVerdict,
    PipelineState,
    PipelineValidation,
    RefinementCheckpoint,
    RunCheck,
    StageResult,
)
from ..structured import parse_json_output
from .state import render_template, with_stage

logger = logging.getLogger(__name__)

RESTORED_PROMPT_MARKER = "[Restored from iteration history]"
ITERATION_WARNING_THRESHOLD = 5


# ---------------------------------------------------------------------------
# Verdict classification
# ---------------------------------------------------------------------------

class VerdictClassifier(Protocol):
    def __call__(self, analysis: str) -> IterationVerdict: ...


_STRUCTURED_VERDICTS: dict[str, IterationVerdict] = {
    "ACCEPT": "accept",
    "NEEDS_REFINEMENT": "needs_refinement",
    "NEEDS REFINEMENT": "needs_refinement",
    "REGRESSION": "regression",
}


class KeywordVerdictClassifier:
    """Reads the verdict an analysis states.

    A structured analysis is trusted for its "verdict" field. Free text is
    scanned for the verdict vocabulary the analyze prompts ask for, then for
    looser phrases. Anything undecided counts as needs_refinement.
    """

    def _structured(self, analysis: str) -> IterationVerdict | None:
        try:
            data = parse_json_output(analysis)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        verdict = data.get("verdict")
        if not isinstance(verdict, str):
            return None
        return _STRUCTURED_VERDICTS.get(verdict.strip().upper())

    def __call__(self, analysis: str) -> IterationVerdict:
        structured = self._structured(analysis)
        if structured is not None:
            return structured

        upper = analysis.upper()
        if "VERDICT" in upper:
            if "ACCEPT" in upper and "NEEDS" not in upper:
                return "accept"
            if "REGRESSION" in upper:
                return "regression"
            if "NEEDS_REFINEMENT" in upper or "NEEDS REFINEMENT" in upper:
                return "needs_refinement"

        if "READY TO USE" in upper or "NO MORE ITERATIONS" in upper:
            return "accept"
        if "WORSE THAN" in upper or "STEP BACKWARD" in upper or "LOST MORE" in upper:
            return "regression"
        return "needs_refinement"


default_classifier = KeywordVerdictClassifier()


# ---------------------------------------------------------------------------
# Gating
# ---------------------------------------------------------------------------

def can_refine(state: PipelineState) -> RunCheck:
    if state.character is None:
        return RunCheck(can_run=False, reason="No character selected")
    if state.results["rewrite"] is None:
        return RunCheck(can_run=False, reason="No rewrite to refine")
    if state.results["analyze"] is None:
        return RunCheck(can_run=False, reason="Run analyze first to identify issues")
    if state.is_refining:
        return RunCheck(can_run=False, reason="Refinement already in progress")
    return RunCheck(can_run=True)


def validate_refinement(state: PipelineState) -> PipelineValidation:
    errors: list[str] = []
    warnings: list[str] = []

    if state.character is None:
        errors.append("No character selected")
    if state.results["rewrite"] is None:
        errors.append("No rewrite to refine")
    if state.results["analyze"] is None:
        errors.append("Run analyze first to identify issues")

    if state.iteration_history and state.iteration_history[-1].verdict == "accept":
        warnings.append("Last analysis suggested accepting the rewrite")
    if state.iteration_count >= ITERATION_WARNING_THRESHOLD:
        warnings.append(
            f"Already at iteration {state.iteration_count + 1} - consider accepting or starting fresh"
        )
    return PipelineValidation(valid=not errors, errors=errors, warnings=warnings)


def build_refinement_prompt(
    state: PipelineState,
    template: str,
    user_name: str = "User",
    substitute: Callable[[str], str] | None = None,
) -> str | None:
    if state.character is None or state.results["rewrite"] is None or state.results["analyze"] is None:
        return None
    return render_template(template, state, user_name, substitute)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def start_refinement(state: PipelineState) -> PipelineState:
    check = can_refine(state)
    if not check.can_run:
        logger.warning("start_refinement refused: %s", check.reason)
        return state

    logger.debug("refinement started iteration=%d", state.iteration_count + 1)
    return state.model_copy(update={
        "is_refining": True,
        "refinement_checkpoint": RefinementCheckpoint(
            iteration_count=state.iteration_count,
            iteration_history=list(state.iteration_history),
        ),
    })


def complete_refinement(
    state: PipelineState,
    response: str,
    is_structured: bool,
    prompt_used: str,
    classifier: VerdictClassifier | None = None,
) -> PipelineState:
    """Record the refined rewrite as the next iteration.

    The snapshot pairs the rewrite that was analysed with that analysis and
    its verdict. The refined text becomes the current rewrite and analyze
    goes back to pending so it gets judged before the next round.
    """
    if not state.is_refining:
        logger.warning("complete_refinement ignored: no refinement in progress")
        return state

    analysed = state.results["rewrite"]
    analysed_text = analysed.response if analysed else ""
    analysis = state.results["analyze"]
    analysis_text = analysis.response if analysis else ""
    verdict = (classifier or default_classifier)(analysis_text)

    snapshot = IterationSnapshot(
        iteration=state.iteration_count,
        verdict=verdict,
        rewrite_response=analysed_text,
        rewrite_preview=analysed_text[:PREVIEW_LENGTH],
        analysis_response=analysis_text,
        analysis_preview=analysis_text[:PREVIEW_LENGTH],
    )
    rewrite = StageResult(response=response, is_structured=is_structured, prompt_used=prompt_used)

    logger.info(
        "refinement complete iteration=%d verdict=%s len=%d",
        snapshot.iteration + 1, verdict, len(response),
    )
    results = with_stage(with_stage(state.results, "rewrite", rewrite), "analyze", None)
    status = with_stage(with_stage(state.stage_status, "rewrite", "complete"), "analyze", "pending")
    return state.model_copy(update={
        "results": results,
        "stage_status": status,
        "current_stage": None,
        "iteration_count": state.iteration_count + 1,
        "iteration_history": [*state.iteration_history, snapshot],
        "is_refining": False,
        "refinement_checkpoint": None,
        "rewrite_accepted": False,
    })


def abort_refinement(state: PipelineState) -> PipelineState:
    """Undo start_refinement after a failed or cancelled generation."""
    checkpoint = state.refinement_checkpoint
    if checkpoint is None:
        return state.model_copy(update={"is_refining": False})

    logger.info("refinement rolled back to iteration_count=%d", checkpoint.iteration_count)
    return state.model_copy(update={
        "iteration_count": checkpoint.iteration_count,
        "iteration_history": list(checkpoint.iteration_history),
        "is_refining": False,
        "refinement_checkpoint": None,
        "current_stage": None,
    })


def revert_to_iteration(state: PipelineState, index: int) -> PipelineState:
    if index < 0 or index >= len(state.iteration_history):
        logger.warning(
            "invalid iteration index %d (history length %d)", index, len(state.iteration_history),
        )
        return state

    snapshot = state.iteration_history[index]
    logger.info("reverting to iteration %d", snapshot.iteration + 1)
    rewrite = StageResult(response=snapshot.rewrite_response, prompt_used=RESTORED_PROMPT_MARKER)
    results = with_stage(with_stage(state.results, "rewrite", rewrite), "analyze", None)
    status = with_stage(with_stage(state.stage_status, "rewrite", "complete"), "analyze", "pending")
    return state.model_copy(update={
        "results": results,
        "stage_status": status,
        "iteration_count": index + 1,
        "iteration_history": state.iteration_history[:index + 1],
        "rewrite_accepted": False,
    })


def accept_rewrite(state: PipelineState) -> PipelineState:
    if state.results["rewrite"] is None:
        return state
    logger.info("rewrite accepted at iteration %d", state.iteration_count)
    return state.model_copy(update={"rewrite_accepted": True})
