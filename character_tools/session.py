"""One user's character-tool session.

PipelineSession owns the current PipelineState, the in-flight flag and the
cancellation token of the running generation. Every run goes through the
same steps: check the flags, set them without awaiting in between, await
the generation, write the outcome back with the state functions.

    is_generating     a stage generation is running
    state.is_refining a refinement generation is running

At most one of the two is set at any time.
"""

from __future__ import annotations

import logging
import uuid

from pydantic import BaseModel, Field

from .cancellation import CANCELLED_MESSAGE, CancellationToken
from .config import EnvConfig, Settings
from .models import (
    STAGES,
    Character,
    GenerationFailure,
    GenerationResult,
    GenerationSuccess,
    PipelineState,
    StageName,
)
from .history import HistoryStore
from .llm import GenerationTransport, HttpChatCompletionService, HttpHostBackend, MacroSubstituter
from .pipeline.export import set_export_data
from .pipeline.generation import GenerationContext, run_refinement_generation, run_stage_generation
from .pipeline.refinement import (
    VerdictClassifier,
    abort_refinement,
    accept_rewrite,
    can_refine,
    complete_refinement,
    revert_to_iteration,
    start_refinement,
)
from .pipeline.rewrite_parser import ParsedRewrite, apply_rewrite_fields, parse_rewrite_response
from .pipeline.state import (
    StageDefaults,
    can_run_stage,
    complete_stage,
    create_pipeline_state,
    fail_stage,
    select_all_stages,
    set_character,
    skip_stage,
    start_stage,
    validate_pipeline,
)
from .presets import InMemoryPresetStore

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A generation is already in progress"


class SessionBusy(RuntimeError):
    """Raised when a generation is started while another one is in flight."""


class PipelineRunReport(BaseModel):
    results: dict[StageName, GenerationResult] = Field(default_factory=dict)
    stopped_at: StageName | None = None
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def completed(self) -> bool:
        return not self.errors and self.stopped_at is None


class RewrittenCharacter(BaseModel):
    parsed: ParsedRewrite
    character: Character
    changed_fields: list[str]


class PipelineSession:
    def __init__(
        self,
        ctx: GenerationContext,
        history: HistoryStore | None = None,
        stage_defaults: StageDefaults | None = None,
        classifier: VerdictClassifier | None = None,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.ctx = ctx
        self.history = history
        self.classifier = classifier
        self.stage_defaults = stage_defaults
        self.state: PipelineState = create_pipeline_state(stage_defaults)
        self.is_generating = False
        self._token: CancellationToken | None = None

    @property
    def busy(self) -> bool:
        return self.is_generating or self.state.is_refining

    # ── Character ──

    async def select_character(self, character: Character | None, index: int | None) -> PipelineState:
        """Switch character and pick up its persisted iteration history."""
        if self.busy:
            raise SessionBusy(BUSY_MESSAGE)
        previous = self.state
        self.state = set_character(self.state, character, index)
        if self.state is previous or character is None or self.history is None:
            return self.state

        history = await self.history.load(character)
        if history:
            self.state = self.state.model_copy(update={
                "iteration_history": history,
                "iteration_count": len(history),
            })
        return self.state

    async def _persist_history(self) -> None:
        if self.history is None or self.state.character is None:
            return
        await self.history.save(self.state.character, list(self.state.iteration_history))

    # ── Stages ──

    async def run_stage(self, stage: StageName) -> GenerationResult:
        if self.busy:
            raise SessionBusy(BUSY_MESSAGE)
        check = can_run_stage(self.state, stage)
        if not check.can_run:
            return GenerationFailure(error=check.reason or f"{stage} cannot run")

        self.is_generating = True
        token = self._token = CancellationToken()
        try:
            self.state = start_stage(self.state, stage)
            result = await run_stage_generation(self.state, stage, token, self.ctx)
            if isinstance(result, GenerationSuccess):
                self.state = complete_stage(
                    self.state, stage, result.response, result.is_structured,
                    result.prompt_used, result.schema_used,
                )
            else:
                self.state = fail_stage(self.state, stage, result.error)
            return result
        except BaseException:
            self.state = fail_stage(self.state, stage, CANCELLED_MESSAGE)
            raise
        finally:
            self.is_generating = False
            self._token = None

    async def run_selected_stages(self) -> PipelineRunReport:
        """Run every selected stage in order, stopping at the first that doesn't complete.

        Unselected stages in front of a selected one are marked skipped so the
        selected ones can run. Locked results are kept as they are.
        """
        if self.busy:
            raise SessionBusy(BUSY_MESSAGE)
        validation = validate_pipeline(self.state, self.ctx.presets)
        report = PipelineRunReport(warnings=validation.warnings)
        if not validation.valid:
            report.errors = validation.errors
            return report

        selected = self.state.selected_stages
        last = max(STAGES.index(s) for s in selected)
        for stage in STAGES[:last]:
            if stage not in selected and self.state.stage_status[stage] in ("pending", "failed"):
                self.state = skip_stage(self.state, stage)

        for stage in selected:
            current = self.state.results[stage]
            if current is not None and current.locked:
                continue
            result = await self.run_stage(stage)
            report.results[stage] = result
            if self.state.stage_status[stage] != "complete":
                report.stopped_at = stage
                break
        return report

    async def run_all_stages(self) -> PipelineRunReport:
        if self.busy:
            raise SessionBusy(BUSY_MESSAGE)
        self.state = select_all_stages(self.state)
        return await self.run_selected_stages()

    # ── Refinement ──

    async def refine(self) -> GenerationResult:
        if self.busy:
            raise SessionBusy(BUSY_MESSAGE)
        check = can_refine(self.state)
        if not check.can_run:
            return GenerationFailure(error=check.reason or "Cannot refine")

        self.state = start_refinement(self.state)
        token = self._token = CancellationToken()
        try:
            result = await run_refinement_generation(self.state, token, self.ctx)
        except BaseException:
            self.state = abort_refinement(self.state)
            self._token = None
            raise

        self._token = None
        if isinstance(result, GenerationSuccess):
            self.state = complete_refinement(
                self.state, result.response, result.is_structured, result.prompt_used,
                self.classifier,
            )
            await self._persist_history()
        else:
            self.state = abort_refinement(self.state)
        return result

    async def revert(self, index: int) -> bool:
        if self.busy:
            raise SessionBusy(BUSY_MESSAGE)
        reverted = revert_to_iteration(self.state, index)
        if reverted is self.state:
            return False
        self.state = reverted
        await self._persist_history()
        return True

    def accept(self) -> PipelineState:
        self.state = accept_rewrite(self.state)
        return self.state

    def rewritten_character(self) -> RewrittenCharacter | None:
        """The current rewrite split into card fields and applied to the character."""
        rewrite = self.state.results["rewrite"]
        if rewrite is None or self.state.character is None:
            return None
        parsed = parse_rewrite_response(rewrite.response)
        character, changed = apply_rewrite_fields(self.state.character, parsed.fields)
        return RewrittenCharacter(parsed=parsed, character=character, changed_fields=changed)

    def cancel(self) -> bool:
        """Cancel the running generation, if any."""
        if self._token is None:
            return False
        logger.info("cancelling generation session=%s", self.id)
        self._token.cancel()
        return True

    def export(self) -> str | None:
        self.state = set_export_data(self.state)
        return self.state.export_data


def create_session(
    settings: Settings,
    env: EnvConfig,
    history: HistoryStore | None = None,
    transport: GenerationTransport | None = None,
) -> PipelineSession:
    """A session wired to the configured backends and presets.

    A transport passed in is used as is; otherwise one is built against the
    provider in the environment.
    """
    substitute = MacroSubstituter({"user": settings.user_name})
    if transport is None:
        transport = GenerationTransport(
            host=HttpHostBackend(env.provider_url, env.api_key, env.host_model),
            service=HttpChatCompletionService(
                env.provider_url, env.api_key, settings.generation_config.model
            ),
            config=settings.generation_config,
            substitute=substitute,
        )
    presets = InMemoryPresetStore(settings.prompt_presets, settings.schema_presets)
    ctx = GenerationContext(transport, presets, settings, substitute)
    session = PipelineSession(ctx, history=history, stage_defaults=settings.stage_defaults)
    logger.debug("session created id=%s host_default=%s", session.id, settings.use_current_settings)
    return session
