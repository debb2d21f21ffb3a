"""Handlebars prompt rendering for pipeline stages.

Stage prompts are Handlebars templates. The context carries the character
summary, earlier stage outputs and the names used by {{char}} / {{user}}.
Known placeholders are rendered raw (no HTML escaping), since the output is
a prompt, not markup.
"""

import re
from collections.abc import Callable
from typing import Any

import pybars

from .characters import build_character_summary
from .models import PipelineState, StageName

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

RAW_PLACEHOLDERS = (
    "original_character",
    "score_results",
    "rewrite_results",
    "current_rewrite",
    "current_analysis",
    "iteration_number",
    "char_name",
    "user_name",
    "char",
    "user",
)

_RAW_RE = re.compile(
    r"(?<!\{)\{\{\s*(" + "|".join(RAW_PLACEHOLDERS) + r")\s*\}\}(?!\})",
    re.IGNORECASE,
)

_STAGE_ACTIONS: dict[StageName, str] = {
    "score": "Analyze",
    "rewrite": "Rewrite",
    "analyze": "Compare",
}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def _raw_placeholders(template_str: str) -> str:
    return _RAW_RE.sub(lambda m: "{{{" + m.group(1).lower() + "}}}", template_str)


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    source = _raw_placeholders(template_str)
    try:
        compiled = _cache.get(source)
        if compiled is None:
            compiled = _compiler.compile(source)
            _cache[source] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def uses_placeholder(template_str: str, name: str) -> bool:
    return re.search(r"\{\{\{?\s*" + re.escape(name) + r"\s*\}", template_str, re.IGNORECASE) is not None


def build_context(state: PipelineState, user_name: str = "User") -> dict[str, Any]:
    """Template variables for the current state.

    Stage outputs that don't exist yet render as empty strings, so
    {{#if score_results}} blocks drop out.
    """
    results = state.results
    score = results["score"].response if results["score"] else ""
    rewrite = results["rewrite"].response if results["rewrite"] else ""
    analysis = results["analyze"].response if results["analyze"] else ""
    char_name = state.character.name if state.character else ""
    return {
        "original_character": build_character_summary(state.character) if state.character else "",
        "score_results": score,
        "rewrite_results": rewrite,
        "current_rewrite": rewrite,
        "current_analysis": analysis,
        "iteration_number": str(state.iteration_count + 1),
        "char_name": char_name,
        "user_name": user_name,
        "char": char_name,
        "user": user_name,
    }


def build_structured_prompt(
    stage: StageName, state: PipelineState, character_summary: str, instructions: str
) -> str:
    """Prepend the character and the earlier outputs a stage needs to its instructions."""
    parts = [f"# Character to {_STAGE_ACTIONS[stage]}", "", character_summary]
    score = state.results["score"]
    rewrite = state.results["rewrite"]

    if stage == "rewrite" and score and score.response:
        parts += ["", "---", "", "# Score Feedback", "",
                  "Use this feedback to guide your rewrite:", "", score.response]
    elif stage == "analyze":
        if rewrite and rewrite.response:
            parts += ["", "---", "", "# Rewritten Version", "",
                      "Compare this against the original:", "", rewrite.response]
        if score and score.response:
            parts += ["", "---", "", "# Original Score Feedback", "",
                      "Reference for what was identified as needing improvement:", "",
                      score.response]

    parts += ["", "---", "", "# Instructions", "", instructions]
    return "\n".join(parts)
