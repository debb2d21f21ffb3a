"""Pydantic request/response models for API endpoints."""

from typing import Any

from pydantic import BaseModel

from character_tools.models import Character, GenerationResult, PipelineState, StageName
from character_tools.session import RewrittenCharacter


class SelectCharacterBody(BaseModel):
    character: Character | None = None
    index: int | None = None


class StageConfigUpdate(BaseModel):
    prompt_preset_id: str | None = None
    custom_prompt: str | None = None
    schema_preset_id: str | None = None
    custom_schema: str | None = None
    use_structured_output: bool | None = None


class SelectStagesBody(BaseModel):
    stages: list[StageName]


class SessionView(BaseModel):
    id: str
    busy: bool
    state: PipelineState


class GenerationView(BaseModel):
    result: GenerationResult
    session: SessionView


class PipelineRunView(BaseModel):
    completed: bool
    stopped_at: StageName | None = None
    errors: list[str]
    warnings: list[str]
    results: dict[str, Any]
    session: SessionView


class AcceptView(BaseModel):
    rewritten: RewrittenCharacter
    session: SessionView


class PromptPresetBody(BaseModel):
    name: str
    prompt: str
    stages: list[StageName] = []


class SchemaPresetBody(BaseModel):
    name: str
    schema_text: str
    stages: list[StageName] = []
