"""Core domain models.

All pipeline operations, the generation engine and the history store operate
on these types. Pydantic is used for validation and serialisation at every
data boundary.

PipelineState is frozen: transitions build a new state with
model_copy(update=...) and never mutate the one they were given. The
per-stage maps (configs, stage_status, results, stage_errors) always hold an
entry for every stage in STAGES.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

StageName = Literal["score", "rewrite", "analyze"]

STAGES: tuple[StageName, ...] = ("score", "rewrite", "analyze")

STAGE_LABELS: dict[StageName, str] = {
    "score": "Score",
    "rewrite": "Rewrite",
    "analyze": "Analyze",
}

StageStatus = Literal["pending", "running", "complete", "skipped", "failed"]

IterationVerdict = Literal["accept", "needs_refinement", "regression"]

PREVIEW_LENGTH = 200


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Stage configuration and results
# ---------------------------------------------------------------------------

class StageConfig(BaseModel):
    """Where a stage gets its prompt and schema from."""

    prompt_preset_id: str | None = None
    custom_prompt: str = ""
    schema_preset_id: str | None = None
    custom_schema: str = ""  # JSON text, empty = none
    use_structured_output: bool = False


class StructuredOutputSchema(BaseModel):
    """A named JSON schema in the wrapper format the backends accept."""

    name: str
    strict: bool = True
    value: dict[str, Any]

    def required_fields(self) -> list[str]:
        required = self.value.get("required")
        if not isinstance(required, list):
            return []
        return [f for f in required if isinstance(f, str)]


class StageResult(BaseModel):
    response: str
    is_structured: bool = False
    prompt_used: str = ""
    schema_used: StructuredOutputSchema | None = None
    timestamp: str = Field(default_factory=utc_now)
    locked: bool = False


class IterationSnapshot(BaseModel):
    """One completed refinement iteration, kept so the user can revert to it."""

    iteration: int
    verdict: IterationVerdict
    timestamp: str = Field(default_factory=utc_now)
    rewrite_response: str
    rewrite_preview: str = ""
    analysis_response: str
    analysis_preview: str = ""


class RefinementCheckpoint(BaseModel):
    """Iteration bookkeeping captured when a refinement starts."""

    iteration_count: int
    iteration_history: list[IterationSnapshot]


# ---------------------------------------------------------------------------
# Character
# ---------------------------------------------------------------------------

class Character(BaseModel):
    """A character card owned by the host. Unknown keys are preserved."""

    model_config = ConfigDict(extra="allow")

    name: str
    avatar: str = ""
    description: str = ""
    personality: str = ""
    first_mes: str = ""
    scenario: str = ""
    mes_example: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    creator_notes: str = ""


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------

def _default_configs() -> dict[StageName, StageConfig]:
    return {stage: StageConfig() for stage in STAGES}


def _default_status() -> dict[StageName, StageStatus]:
    return {stage: "pending" for stage in STAGES}


def _empty_results() -> dict[StageName, StageResult | None]:
    return {stage: None for stage in STAGES}


def _empty_errors() -> dict[StageName, str | None]:
    return {stage: None for stage in STAGES}


class PipelineState(BaseModel):
    model_config = ConfigDict(frozen=True)

    character: Character | None = None
    character_index: int | None = None

    selected_stages: list[StageName] = Field(default_factory=lambda: ["score", "rewrite"])
    configs: dict[StageName, StageConfig] = Field(default_factory=_default_configs)
    stage_status: dict[StageName, StageStatus] = Field(default_factory=_default_status)
    results: dict[StageName, StageResult | None] = Field(default_factory=_empty_results)
    stage_errors: dict[StageName, str | None] = Field(default_factory=_empty_errors)
    current_stage: StageName | None = None

    iteration_count: int = 0
    iteration_history: list[IterationSnapshot] = Field(default_factory=list)
    is_refining: bool = False
    refinement_checkpoint: RefinementCheckpoint | None = None
    rewrite_accepted: bool = False

    export_data: str | None = None


# ---------------------------------------------------------------------------
# Generation outcomes and advisory results
# ---------------------------------------------------------------------------

class GenerationSuccess(BaseModel):
    success: Literal[True] = True
    response: str
    is_structured: bool = False
    prompt_used: str = ""
    schema_used: StructuredOutputSchema | None = None


class GenerationFailure(BaseModel):
    success: Literal[False] = False
    error: str


GenerationResult = GenerationSuccess | GenerationFailure


class RunCheck(BaseModel):
    can_run: bool
    reason: str | None = None


class PipelineValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
