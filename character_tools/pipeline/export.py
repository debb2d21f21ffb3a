"""Markdown export of the final rewrite."""

from __future__ import annotations

from datetime import datetime, timezone

from ..models import PipelineState


def _format_timestamp(value: str) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M UTC")
    except ValueError:
        return value


def generate_export_data(state: PipelineState, now: datetime | None = None) -> str | None:
    """Rewrite first, then final analysis, original score and iteration history.

    None until there is a character and a rewrite.
    """
    rewrite = state.results["rewrite"]
    if state.character is None or rewrite is None:
        return None

    generated = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M UTC")
    lines = [
        f"# {state.character.name} (Rewritten)",
        "",
        f"Generated: {generated}",
        f"Iterations: {state.iteration_count}",
        "",
        "---",
        "",
        rewrite.response,
    ]

    analysis = state.results["analyze"]
    if analysis is not None:
        lines += ["", "---", "", "## Final Analysis", "", analysis.response]

    score = state.results["score"]
    if score is not None:
        lines += ["", "---", "", "## Original Score", "", score.response]

    if state.iteration_history:
        lines += ["", "---", "", "## Iteration History", ""]
        for snap in state.iteration_history:
            lines += [
                f"### Iteration {snap.iteration + 1} - {snap.verdict.upper()}",
                _format_timestamp(snap.timestamp),
                "",
            ]

    return "\n".join(lines)


def set_export_data(state: PipelineState) -> PipelineState:
    return state.model_copy(update={"export_data": generate_export_data(state)})
