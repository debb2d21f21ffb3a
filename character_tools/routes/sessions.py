"""Pipeline session endpoints.

Sessions are kept in memory on app.state.sessions, keyed by id. Generation
endpoints await the run; cancel is a separate request against the same
session. A second generation while one is in flight is refused with 409.
"""

from typing import Literal

from fastapi import APIRouter, HTTPException, Request

from character_tools.models import StageName
from character_tools.pipeline.state import (
    can_export,
    clear_stage_result,
    get_stage_result,
    has_stage_result,
    lock_stage_result,
    set_selected_stages,
    skip_stage,
    toggle_stage,
    unlock_stage_result,
    update_stage_config,
)
from character_tools.session import PipelineSession, SessionBusy, create_session
from character_tools.tokens import HeuristicTokenizer, get_stage_token_count

from .models import (
    AcceptView,
    GenerationView,
    PipelineRunView,
    SelectCharacterBody,
    SelectStagesBody,
    SessionView,
    StageConfigUpdate,
)

router = APIRouter()

_STAGE_ACTIONS = {
    "skip": skip_stage,
    "lock": lock_stage_result,
    "unlock": unlock_stage_result,
    "clear": clear_stage_result,
}


def _view(session: PipelineSession) -> SessionView:
    return SessionView(id=session.id, busy=session.busy, state=session.state)


def _get_session(request: Request, session_id: str) -> PipelineSession:
    session = request.app.state.sessions.get(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


def _ensure_idle(session: PipelineSession) -> None:
    if session.busy:
        raise HTTPException(409, "A generation is already in progress")


@router.post("/sessions", status_code=201)
async def create_session_endpoint(request: Request):
    """Start a session using the current settings."""
    state = request.app.state
    session = create_session(
        state.settings_store.get(), state.env, state.history, state.transport
    )
    state.sessions[session.id] = session
    return _view(session)


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: str):
    """Get a session's pipeline state."""
    return _view(_get_session(request, session_id))


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: str):
    """Drop a session, cancelling its generation if one is running."""
    session = _get_session(request, session_id)
    session.cancel()
    del request.app.state.sessions[session_id]
    return {"ok": True}


@router.put("/sessions/{session_id}/character")
async def select_character(request: Request, session_id: str, body: SelectCharacterBody):
    """Select (or clear) the session's character and load its saved iterations."""
    session = _get_session(request, session_id)
    try:
        await session.select_character(body.character, body.index)
    except SessionBusy as e:
        raise HTTPException(409, str(e)) from e
    return _view(session)


# ── Stages ──

@router.put("/sessions/{session_id}/stages")
async def select_stages(request: Request, session_id: str, body: SelectStagesBody):
    """Replace the set of selected stages."""
    session = _get_session(request, session_id)
    session.state = set_selected_stages(session.state, body.stages)
    return _view(session)


@router.post("/sessions/{session_id}/stages/{stage}/toggle")
async def toggle_stage_endpoint(request: Request, session_id: str, stage: StageName):
    """Select or deselect a stage."""
    session = _get_session(request, session_id)
    session.state = toggle_stage(session.state, stage)
    return _view(session)


@router.patch("/sessions/{session_id}/stages/{stage}/config")
async def update_stage_config_endpoint(
    request: Request, session_id: str, stage: StageName, body: StageConfigUpdate
):
    """Update a stage's prompt/schema configuration (partial)."""
    session = _get_session(request, session_id)
    updates = body.model_dump(exclude_none=True)
    try:
        session.state = update_stage_config(session.state, stage, **updates)
    except ValueError as e:
        raise HTTPException(422, str(e)) from e
    return _view(session)


@router.get("/sessions/{session_id}/stages/{stage}/result")
async def stage_result(request: Request, session_id: str, stage: StageName):
    """A stage's current result."""
    session = _get_session(request, session_id)
    if not has_stage_result(session.state, stage):
        raise HTTPException(404, "No result for stage")
    return get_stage_result(session.state, stage)


@router.post("/sessions/{session_id}/stages/{stage}/run")
async def run_stage_endpoint(request: Request, session_id: str, stage: StageName):
    """Run one stage. Refusals and failures come back as an unsuccessful result."""
    session = _get_session(request, session_id)
    try:
        result = await session.run_stage(stage)
    except SessionBusy as e:
        raise HTTPException(409, str(e)) from e
    return GenerationView(result=result, session=_view(session))


@router.post("/sessions/{session_id}/stages/{stage}/{action}")
async def stage_action(
    request: Request,
    session_id: str,
    stage: StageName,
    action: Literal["skip", "lock", "unlock", "clear"],
):
    """Skip a stage, lock/unlock its result, or clear it back to pending."""
    session = _get_session(request, session_id)
    _ensure_idle(session)
    session.state = _STAGE_ACTIONS[action](session.state, stage)
    return _view(session)


@router.post("/sessions/{session_id}/run")
async def run_pipeline(request: Request, session_id: str, all_stages: bool = False):
    """Run the selected stages in order (or every stage with ?all_stages=true)."""
    session = _get_session(request, session_id)
    try:
        if all_stages:
            report = await session.run_all_stages()
        else:
            report = await session.run_selected_stages()
    except SessionBusy as e:
        raise HTTPException(409, str(e)) from e
    return PipelineRunView(
        completed=report.completed,
        stopped_at=report.stopped_at,
        errors=report.errors,
        warnings=report.warnings,
        results={stage: result.model_dump() for stage, result in report.results.items()},
        session=_view(session),
    )


@router.post("/sessions/{session_id}/cancel")
async def cancel_generation(request: Request, session_id: str):
    """Cancel the running generation, if any."""
    session = _get_session(request, session_id)
    return {"cancelled": session.cancel()}


@router.get("/sessions/{session_id}/tokens/{stage}")
async def stage_tokens(request: Request, session_id: str, stage: StageName):
    """Estimated prompt size for a stage against the context window."""
    session = _get_session(request, session_id)
    settings = session.ctx.settings
    estimate = await get_stage_token_count(
        session.state, stage, HeuristicTokenizer(), session.ctx.presets,
        settings.system_prompt, session.ctx.user_name,
    )
    if estimate is None:
        return {"estimate": None}
    return {"estimate": estimate, "level": estimate.level}


# ── Refinement ──

@router.post("/sessions/{session_id}/refine")
async def refine(request: Request, session_id: str):
    """Run one refinement iteration over the current rewrite and analysis."""
    session = _get_session(request, session_id)
    try:
        result = await session.refine()
    except SessionBusy as e:
        raise HTTPException(409, str(e)) from e
    return GenerationView(result=result, session=_view(session))


@router.post("/sessions/{session_id}/revert/{index}")
async def revert(request: Request, session_id: str, index: int):
    """Restore the rewrite from an earlier iteration, dropping later ones."""
    session = _get_session(request, session_id)
    try:
        reverted = await session.revert(index)
    except SessionBusy as e:
        raise HTTPException(409, str(e)) from e
    if not reverted:
        raise HTTPException(422, f"No iteration at index {index}")
    return _view(session)


@router.post("/sessions/{session_id}/accept")
async def accept(request: Request, session_id: str):
    """Mark the current rewrite as accepted and return it split into card fields.

    The host writes the returned character back to its card; nothing here
    touches the stored card.
    """
    session = _get_session(request, session_id)
    if not can_export(session.state):
        raise HTTPException(409, "No rewrite to accept")
    session.accept()
    rewritten = session.rewritten_character()
    if rewritten is None:
        raise HTTPException(409, "No character selected")
    return AcceptView(rewritten=rewritten, session=_view(session))


@router.get("/sessions/{session_id}/export")
async def export(request: Request, session_id: str):
    """Markdown export of the rewrite, analysis, score and iteration history."""
    session = _get_session(request, session_id)
    data = session.export()
    if data is None:
        raise HTTPException(404, "No rewrite to export")
    return {"markdown": data}
