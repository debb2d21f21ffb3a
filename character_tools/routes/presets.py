"""Prompt and schema preset endpoints.

User presets are stored in settings; builtins are always listed and can't be
overwritten or deleted. Sessions created after a change pick it up.
"""

from fastapi import APIRouter, HTTPException, Request

from character_tools.config import InvalidSettings
from character_tools.models import StageName
from character_tools.presets import (
    InMemoryPresetStore,
    PromptPreset,
    SchemaPreset,
    validate_prompt_preset,
    validate_schema_preset,
)
from character_tools.schema import validate_schema

from .models import PromptPresetBody, SchemaPresetBody

router = APIRouter()


def _store(request: Request) -> InMemoryPresetStore:
    settings = request.app.state.settings_store.get()
    return InMemoryPresetStore(settings.prompt_presets, settings.schema_presets)


def _persist(request: Request, store: InMemoryPresetStore) -> None:
    try:
        request.app.state.settings_store.update({
            "prompt_presets": [p.model_dump() for p in store.user_prompt_presets()],
            "schema_presets": [p.model_dump(by_alias=True) for p in store.user_schema_presets()],
        })
    except InvalidSettings as e:
        raise HTTPException(422, e.errors) from e


@router.get("/presets")
async def list_presets(request: Request, stage: StageName | None = None):
    """Builtin and user presets, optionally only those offered for one stage."""
    store = _store(request)
    return {
        "prompts": store.list_prompt_presets(stage),
        "schemas": store.list_schema_presets(stage),
    }


@router.post("/presets/prompt", status_code=201)
async def create_prompt_preset(request: Request, body: PromptPresetBody):
    """Save a user prompt preset."""
    check = validate_prompt_preset(body.name, body.prompt)
    if not check.valid:
        raise HTTPException(422, check.errors)
    store = _store(request)
    preset = store.save_prompt_preset(
        PromptPreset(name=body.name.strip(), prompt=body.prompt, stages=body.stages)
    )
    _persist(request, store)
    return {"preset": preset, "warnings": check.warnings}


@router.post("/presets/schema", status_code=201)
async def create_schema_preset(request: Request, body: SchemaPresetBody):
    """Save a user schema preset from schema JSON text."""
    check = validate_schema_preset(body.name, body.schema_text)
    if not check.valid:
        raise HTTPException(422, check.errors)
    store = _store(request)
    preset = store.save_schema_preset(SchemaPreset(
        name=body.name.strip(),
        schema=validate_schema(body.schema_text).parsed,
        stages=body.stages,
    ))
    _persist(request, store)
    return {"preset": preset.model_dump(by_alias=True), "warnings": check.warnings}


@router.delete("/presets/{preset_id}")
async def delete_preset(request: Request, preset_id: str):
    """Delete a user preset."""
    store = _store(request)
    try:
        deleted = store.delete_preset(preset_id)
    except ValueError as e:
        raise HTTPException(409, str(e)) from e
    if not deleted:
        raise HTTPException(404, "Preset not found")
    _persist(request, store)
    return {"ok": True}
