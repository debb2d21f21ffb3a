"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, get/patch settings), presets and
sessions. A session holds one pipeline state; every stage, refinement and
export endpoint is nested under /api/sessions/{session_id}/.
"""

from fastapi import APIRouter

from .presets import router as presets_router
from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(presets_router)
router.include_router(sessions_router)
