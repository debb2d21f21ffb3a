"""Stage pipeline: score → rewrite → analyze, then optional refinement.

Modules:
  state          — pure state transitions for the three stages, gating,
                   validation, prompt/schema resolution.
  refinement     — refinement loop bookkeeping: checkpoint, snapshot,
                   rollback, revert, accept, verdict classification.
  generation     — the two async entry points that turn a state snapshot into
                   a GenerationResult (prompt → executor → validator).
  export         — markdown export of the final rewrite.
  rewrite_parser — best-effort split of a rewrite response into card fields.

Every state function takes a PipelineState and returns a new one. Nothing in
this package holds state between calls; PipelineSession (session.py) owns
the current state and the in-flight flag.
"""

from .generation import (  # noqa: F401
    GenerationContext,
    run_refinement_generation,
    run_stage_generation,
)
from .refinement import (  # noqa: F401
    KeywordVerdictClassifier,
    VerdictClassifier,
    abort_refinement,
    accept_rewrite,
    can_refine,
    complete_refinement,
    revert_to_iteration,
    start_refinement,
    validate_refinement,
)
from .rewrite_parser import ParsedRewrite, apply_rewrite_fields, parse_rewrite_response  # noqa: F401
from .state import (  # noqa: F401
    can_run_stage,
    clear_stage_result,
    complete_stage,
    create_pipeline_state,
    fail_stage,
    set_character,
    skip_stage,
    start_stage,
    toggle_stage,
)
