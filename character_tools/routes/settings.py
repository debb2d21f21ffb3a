"""Health check and settings endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from character_tools.config import InvalidSettings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get settings (generation config, prompts, stage defaults, user presets)."""
    return request.app.state.settings_store.get()


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update settings (partial merge). New sessions pick up the result."""
    try:
        settings = request.app.state.settings_store.update(body)
    except InvalidSettings as e:
        raise HTTPException(422, e.errors) from e
    except ValidationError as e:
        raise HTTPException(422, str(e)) from e
    logging.getLogger("character_tools").setLevel(
        logging.DEBUG if settings.debug_mode else logging.INFO
    )
    return settings
