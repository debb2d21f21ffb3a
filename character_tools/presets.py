"""Prompt and schema presets.

Builtin presets ship with the package and are always available. User presets
live in settings and are merged over the builtins by InMemoryPresetStore. A
stage resolves its prompt and schema from its StageConfig: custom text wins
over a referenced preset, and a missing preset or an invalid custom schema
resolves to None.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .models import StageConfig, StageName, StructuredOutputSchema
from .schema import validate_schema

logger = logging.getLogger(__name__)

MAX_PRESET_NAME_LENGTH = 100
MAX_PROMPT_LENGTH = 50_000


class PromptPreset(BaseModel):
    id: str = Field(default_factory=lambda: f"prompt_{uuid.uuid4().hex[:12]}")
    name: str
    prompt: str
    stages: list[StageName] = Field(default_factory=list)  # empty = every stage
    is_builtin: bool = False


class SchemaPreset(BaseModel):
    id: str = Field(default_factory=lambda: f"schema_{uuid.uuid4().hex[:12]}")
    name: str
    schema_: StructuredOutputSchema = Field(alias="schema")
    stages: list[StageName] = Field(default_factory=list)
    is_builtin: bool = False

    model_config = {"populate_by_name": True}


class PresetValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class PresetStore(Protocol):
    def get_prompt_preset(self, preset_id: str) -> PromptPreset | None: ...

    def get_schema_preset(self, preset_id: str) -> SchemaPreset | None: ...


# ── Default prompts ──────────────────────────────────────

DEFAULT_SYSTEM_PROMPT = """\
You are a creative writing assistant specializing in character development for \
roleplay and fiction. Analyze character cards and provide thoughtful, actionable feedback.

Adapt your response style to the task:
- For scoring: Be critical but fair, rate 1-10 with specific justifications
- For rewrites: Preserve the character's core identity while improving weak areas
- For analysis: Compare versions objectively, identify what was lost or gained
- For refinement: Address specific issues from analysis while keeping improvements

Always maintain the character's essential personality and unique traits. \
Improvements should enhance, not replace, what makes the character interesting."""

DEFAULT_REFINEMENT_PROMPT = """\
You are refining a character card rewrite based on analysis feedback.

## Original Character (Ground Truth)
{{original_character}}

## Current Rewrite (Iteration {{iteration_number}})
{{current_rewrite}}

## Analysis of Current Rewrite
{{current_analysis}}

{{#if score_results}}
## Original Score Feedback (Reference)
{{score_results}}
{{/if}}

---

## Your Task

Create an improved version that:

1. **Addresses Issues**: Fix the specific problems identified in the analysis
2. **Preserves Wins**: Keep what the analysis said was working well
3. **Maintains Soul**: The character must still feel like the original, just better
4. **Avoids Regression**: Don't reintroduce problems that were already fixed

Output the complete refined character card with all fields. Mark significantly \
changed sections with [REFINED] at the start.

Do NOT explain your changes - just output the improved character card."""


# ── Builtin prompt presets ───────────────────────────────

_SCORE_DEFAULT = """\
Rate this character card on a scale of 1-10 for each populated field. For each field, provide:

1. **Score** (1-10)
2. **Strengths** - What works well
3. **Weaknesses** - What needs improvement
4. **Specific Suggestions** - Concrete changes to improve it

After scoring all fields, provide:
- **Overall Score** (weighted average, with First Message and Description weighted higher)
- **Top 3 Priority Improvements** - The changes that would have the biggest impact
- **Summary** - A brief overall assessment

Be critical but constructive. Specific, actionable feedback beats vague praise."""

_SCORE_QUICK = """\
Give a quick assessment of this character card:

1. Overall score (1-10)
2. Three biggest strengths
3. Three areas needing work
4. One-sentence summary

Keep it concise but useful."""

_REWRITE_DEFAULT = """\
Based on the scoring feedback, rewrite this character card to address the \
identified weaknesses while preserving its strengths.

Guidelines:
- Maintain the character's core personality and unique traits
- Improve weak areas identified in the score
- Keep the same general length unless brevity/expansion was specifically noted
- Preserve any distinctive voice or style that works
- Fix contradictions and fill gaps

Output the complete rewritten character card with all fields, using the same \
field structure as the original. Mark significantly changed sections with [REVISED] at the start.

{{score_results}}"""

_REWRITE_CONSERVATIVE = """\
Make minimal, surgical improvements to this character card. Only change what's clearly broken or weak.

Rules:
- Change as little as possible
- Preserve the author's voice completely
- Only fix obvious issues (contradictions, grammar, clarity)
- Do NOT change style or tone

Output only the fields you changed, with [ORIGINAL] and [REVISED] versions for comparison.

{{score_results}}"""

_REWRITE_EXPANSIVE = """\
Significantly expand and enhance this character card. Add depth, detail, and richness.

Goals:
- Flesh out underdeveloped areas
- Add sensory details and specific examples
- Deepen personality with quirks, contradictions, history
- Improve example messages with more variety

Don't change the core concept, but make it shine. Output the complete expanded character card.

{{score_results}}"""

_ANALYZE_DEFAULT = """\
Compare the original character card with the rewritten version. Analyze:

## What Was Preserved
Core personality traits, distinctive elements, voice and style that remained intact.

## What Was Lost
Personality aspects, quirks or tone that were diminished or removed.

## What Was Gained
New depth, improvements, better clarity or consistency.

## Soul Check
Does the rewritten version still feel like the same character? Rate the \
"soul preservation" from 1-10 and explain.

## Verdict
State clearly: **ACCEPT** (ready to use), **NEEDS REFINEMENT** (good progress \
but has issues), or **REGRESSION** (worse than before).

## Specific Issues to Address
If verdict is NEEDS REFINEMENT, list the specific problems that should be fixed in the next iteration.

---

### Original Character:
{{original_character}}

### Rewritten Version:
{{rewrite_results}}

### Score Feedback:
{{score_results}}"""

_ANALYZE_ITERATION = """\
This is iteration {{iteration_number}} of refinement. Compare the current rewrite against the original.

## Progress Check
- What issues from previous analysis were addressed?
- What new issues (if any) were introduced?
- Is this version better, worse, or a lateral move from the last?

## Soul Preservation Score
Rate 1-10: Does this still feel like the original character?

## Verdict
**ACCEPT** - Ready to use, no more iterations needed
**NEEDS REFINEMENT** - Making progress, but specific issues remain
**REGRESSION** - This iteration made things worse, consider reverting

## Next Steps
If NEEDS REFINEMENT: List exactly what the next iteration should fix.
If REGRESSION: Explain what went wrong and what to preserve from the previous version.

---

### Original Character:
{{original_character}}

### Current Rewrite (Iteration {{iteration_number}}):
{{rewrite_results}}"""

_ANALYZE_QUICK = """\
Quick comparison of original vs rewrite:

1. Soul preserved? (Yes/Partially/No)
2. Best improvement made
3. Biggest thing lost (if any)
4. Verdict: ACCEPT / NEEDS REFINEMENT / REGRESSION

{{original_character}}

{{rewrite_results}}"""

BUILTIN_PROMPT_PRESETS: tuple[PromptPreset, ...] = (
    PromptPreset(id="builtin_score_default", name="Default Score", stages=["score"],
                 prompt=_SCORE_DEFAULT, is_builtin=True),
    PromptPreset(id="builtin_score_quick", name="Quick Score", stages=["score"],
                 prompt=_SCORE_QUICK, is_builtin=True),
    PromptPreset(id="builtin_rewrite_default", name="Default Rewrite", stages=["rewrite"],
                 prompt=_REWRITE_DEFAULT, is_builtin=True),
    PromptPreset(id="builtin_rewrite_conservative", name="Conservative Rewrite", stages=["rewrite"],
                 prompt=_REWRITE_CONSERVATIVE, is_builtin=True),
    PromptPreset(id="builtin_rewrite_expansive", name="Expansive Rewrite", stages=["rewrite"],
                 prompt=_REWRITE_EXPANSIVE, is_builtin=True),
    PromptPreset(id="builtin_analyze_default", name="Default Analyze", stages=["analyze"],
                 prompt=_ANALYZE_DEFAULT, is_builtin=True),
    PromptPreset(id="builtin_analyze_iteration", name="Iteration Analyze", stages=["analyze"],
                 prompt=_ANALYZE_ITERATION, is_builtin=True),
    PromptPreset(id="builtin_analyze_quick", name="Quick Analyze", stages=["analyze"],
                 prompt=_ANALYZE_QUICK, is_builtin=True),
    PromptPreset(id="builtin_freeform", name="Freeform", stages=[],
                 prompt="[Enter your custom instructions here]", is_builtin=True),
)


# ── Builtin schema presets ───────────────────────────────

def _string_array() -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


_SCORE_SCHEMA = StructuredOutputSchema(
    name="CharacterScore",
    value={
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "fieldScores": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "field": {"type": "string"},
                        "score": {"type": "number"},
                        "strengths": {"type": "string"},
                        "weaknesses": {"type": "string"},
                        "suggestions": {"type": "string"},
                    },
                    "required": ["field", "score", "strengths", "weaknesses", "suggestions"],
                },
            },
            "overallScore": {"type": "number"},
            "priorityImprovements": _string_array(),
            "summary": {"type": "string"},
        },
        "required": ["fieldScores", "overallScore", "priorityImprovements", "summary"],
    },
)

_QUICK_SCORE_SCHEMA = StructuredOutputSchema(
    name="QuickScore",
    value={
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "overallScore": {"type": "number"},
            "strengths": _string_array(),
            "weaknesses": _string_array(),
            "summary": {"type": "string"},
        },
        "required": ["overallScore", "strengths", "weaknesses", "summary"],
    },
)

_ANALYZE_SCHEMA = StructuredOutputSchema(
    name="CharacterAnalysis",
    value={
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "preserved": _string_array(),
            "lost": _string_array(),
            "gained": _string_array(),
            "soulPreservationScore": {"type": "number"},
            "soulAssessment": {"type": "string"},
            "verdict": {"type": "string", "enum": ["ACCEPT", "NEEDS_REFINEMENT", "REGRESSION"]},
            "issuesToAddress": _string_array(),
            "recommendations": _string_array(),
        },
        "required": [
            "preserved", "lost", "gained", "soulPreservationScore",
            "soulAssessment", "verdict", "issuesToAddress", "recommendations",
        ],
    },
)

BUILTIN_SCHEMA_PRESETS: tuple[SchemaPreset, ...] = (
    SchemaPreset(id="builtin_schema_score", name="Default Score", stages=["score"],
                 schema=_SCORE_SCHEMA, is_builtin=True),
    SchemaPreset(id="builtin_schema_quick_score", name="Quick Score", stages=["score"],
                 schema=_QUICK_SCORE_SCHEMA, is_builtin=True),
    SchemaPreset(id="builtin_schema_analyze", name="Default Analyze", stages=["analyze"],
                 schema=_ANALYZE_SCHEMA, is_builtin=True),
)

DEFAULT_STAGE_DEFAULTS: dict[StageName, StageConfig] = {
    "score": StageConfig(prompt_preset_id="builtin_score_default",
                         schema_preset_id="builtin_schema_score"),
    "rewrite": StageConfig(prompt_preset_id="builtin_rewrite_default"),
    "analyze": StageConfig(prompt_preset_id="builtin_analyze_default",
                           schema_preset_id="builtin_schema_analyze"),
}

TEMPLATE_PLACEHOLDERS = (
    "original_character",
    "score_results",
    "rewrite_results",
    "current_rewrite",
    "current_analysis",
    "iteration_number",
    "char_name",
    "user_name",
)


# ── Store ────────────────────────────────────────────────

class InMemoryPresetStore:
    """Builtin presets plus user presets, user entries shadowing builtins by id."""

    def __init__(
        self,
        prompt_presets: list[PromptPreset] | None = None,
        schema_presets: list[SchemaPreset] | None = None,
    ) -> None:
        self._prompts: dict[str, PromptPreset] = {p.id: p for p in BUILTIN_PROMPT_PRESETS}
        self._schemas: dict[str, SchemaPreset] = {p.id: p for p in BUILTIN_SCHEMA_PRESETS}
        for preset in prompt_presets or []:
            self._prompts[preset.id] = preset
        for preset in schema_presets or []:
            self._schemas[preset.id] = preset

    def get_prompt_preset(self, preset_id: str) -> PromptPreset | None:
        return self._prompts.get(preset_id)

    def get_schema_preset(self, preset_id: str) -> SchemaPreset | None:
        return self._schemas.get(preset_id)

    def list_prompt_presets(self, stage: StageName | None = None) -> list[PromptPreset]:
        presets = list(self._prompts.values())
        if stage is None:
            return presets
        return [p for p in presets if not p.stages or stage in p.stages]

    def list_schema_presets(self, stage: StageName | None = None) -> list[SchemaPreset]:
        presets = list(self._schemas.values())
        if stage is None:
            return presets
        return [p for p in presets if not p.stages or stage in p.stages]

    def user_prompt_presets(self) -> list[PromptPreset]:
        return [p for p in self._prompts.values() if not p.is_builtin]

    def user_schema_presets(self) -> list[SchemaPreset]:
        return [p for p in self._schemas.values() if not p.is_builtin]

    def save_prompt_preset(self, preset: PromptPreset) -> PromptPreset:
        existing = self._prompts.get(preset.id)
        if existing is not None and existing.is_builtin:
            raise ValueError(f"Cannot overwrite builtin preset: {preset.id}")
        self._prompts[preset.id] = preset
        return preset

    def save_schema_preset(self, preset: SchemaPreset) -> SchemaPreset:
        existing = self._schemas.get(preset.id)
        if existing is not None and existing.is_builtin:
            raise ValueError(f"Cannot overwrite builtin preset: {preset.id}")
        self._schemas[preset.id] = preset
        return preset

    def delete_preset(self, preset_id: str) -> bool:
        for table in (self._prompts, self._schemas):
            preset = table.get(preset_id)
            if preset is not None:
                if preset.is_builtin:
                    raise ValueError(f"Cannot delete builtin preset: {preset_id}")
                del table[preset_id]
                return True
        return False

    def is_name_unique(self, kind: str, name: str, exclude_id: str | None = None) -> bool:
        table = self._prompts if kind == "prompt" else self._schemas
        return not any(
            p.name.lower() == name.lower() and p.id != exclude_id for p in table.values()
        )


# ── Resolution ───────────────────────────────────────────

def resolve_prompt(config: StageConfig, presets: PresetStore) -> str | None:
    """Custom prompt text if set, else the referenced preset's prompt, else None."""
    if config.custom_prompt.strip():
        return config.custom_prompt
    if config.prompt_preset_id:
        preset = presets.get_prompt_preset(config.prompt_preset_id)
        if preset is not None:
            return preset.prompt
        logger.warning("Prompt preset not found: %s", config.prompt_preset_id)
    return None


def resolve_schema(config: StageConfig, presets: PresetStore) -> StructuredOutputSchema | None:
    """Schema for a stage that has structured output switched on.

    Custom schema text wins over a preset. Invalid custom text and missing
    presets both resolve to None.
    """
    if not config.use_structured_output:
        return None
    if config.custom_schema.strip():
        result = validate_schema(config.custom_schema)
        if result.valid and result.parsed is not None:
            return result.parsed
        logger.warning("Custom schema invalid: %s", result.error)
        return None
    if config.schema_preset_id:
        preset = presets.get_schema_preset(config.schema_preset_id)
        if preset is not None:
            return preset.schema_
        logger.warning("Schema preset not found: %s", config.schema_preset_id)
    return None


def prompt_placeholders(prompt: str) -> list[str]:
    lowered = prompt.lower()
    return [name for name in TEMPLATE_PLACEHOLDERS if "{{" + name in lowered]


def unfilled_placeholders(
    prompt: str, stage: StageName, has_score: bool, has_rewrite: bool
) -> list[str]:
    """Placeholders the prompt uses that will render empty for this stage."""
    unfilled = []
    for name in prompt_placeholders(prompt):
        if name == "score_results" and not has_score and stage != "score":
            unfilled.append("{{score_results}} - no score results available")
        elif name == "rewrite_results" and not has_rewrite and stage != "rewrite":
            unfilled.append("{{rewrite_results}} - no rewrite results available")
    return unfilled


# ── User preset validation ───────────────────────────────

def _check_name(name: str | None, errors: list[str]) -> None:
    if not name or not name.strip():
        errors.append("Name is required")
    elif len(name) > MAX_PRESET_NAME_LENGTH:
        errors.append(f"Name must be {MAX_PRESET_NAME_LENGTH} characters or less")


def validate_prompt_preset(name: str | None, prompt: str | None) -> PresetValidation:
    errors: list[str] = []
    warnings: list[str] = []
    _check_name(name, errors)
    if not prompt or not prompt.strip():
        errors.append("Prompt is required")
    elif len(prompt) > MAX_PROMPT_LENGTH:
        errors.append(f"Prompt is too long (max {MAX_PROMPT_LENGTH:,} characters)")
    elif "{{" in prompt and not prompt_placeholders(prompt):
        warnings.append("Prompt contains {{ but no recognized placeholders")
    return PresetValidation(valid=not errors, errors=errors, warnings=warnings)


def validate_schema_preset(name: str | None, schema_text: str | None) -> PresetValidation:
    errors: list[str] = []
    warnings: list[str] = []
    _check_name(name, errors)
    if not schema_text or not schema_text.strip():
        errors.append("Schema is required")
    else:
        result = validate_schema(schema_text)
        if not result.valid:
            errors.append(result.error or "Invalid schema")
        warnings.extend(result.warnings)
    return PresetValidation(valid=not errors, errors=errors, warnings=warnings)


def validate_user_presets(
    prompt_presets: list[PromptPreset], schema_presets: list[SchemaPreset]
) -> list[str]:
    """Errors for a full set of user presets about to be saved.

    Each preset is checked on its own, then added to a scratch store so
    builtin ids and repeated names are caught too.
    """
    store = InMemoryPresetStore()
    errors: list[str] = []

    def add(kind: str, preset, result: PresetValidation, save) -> None:
        label = f"{kind.capitalize()} preset '{preset.name}'"
        errors.extend(f"{label}: {e}" for e in result.errors)
        if preset.is_builtin:
            errors.append(f"{label}: cannot be marked builtin")
            return
        if result.valid and not store.is_name_unique(kind, preset.name, exclude_id=preset.id):
            errors.append(f"{label}: name already in use")
        try:
            save(preset)
        except ValueError as e:
            errors.append(f"{label}: {e}")

    for preset in prompt_presets:
        add("prompt", preset, validate_prompt_preset(preset.name, preset.prompt),
            store.save_prompt_preset)
    for preset in schema_presets:
        add("schema", preset, validate_schema_preset(preset.name, preset.schema_.model_dump_json()),
            store.save_schema_preset)
    return errors
