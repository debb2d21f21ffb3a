"""Prompt size estimation for display. Not part of generation."""

from __future__ import annotations

import logging
import math
from typing import Protocol

from pydantic import BaseModel

from .models import PipelineState, StageName
from .pipeline.state import build_stage_prompt
from .presets import PresetStore

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 0.5
DANGER_THRESHOLD = 0.8


class Tokenizer(Protocol):
    context_size: int

    async def __call__(self, text: str) -> int: ...


class HeuristicTokenizer:
    """Roughly four characters per token."""

    def __init__(self, context_size: int = 8192, chars_per_token: float = 4.0) -> None:
        self.context_size = context_size
        self._chars_per_token = chars_per_token

    async def __call__(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)


class TokenEstimate(BaseModel):
    prompt_tokens: int
    context_size: int
    percentage: int

    @property
    def level(self) -> str:
        ratio = self.prompt_tokens / self.context_size if self.context_size else 1.0
        if ratio >= DANGER_THRESHOLD:
            return "danger"
        if ratio >= WARNING_THRESHOLD:
            return "warning"
        return "ok"


async def get_stage_token_count(
    state: PipelineState,
    stage: StageName,
    tokenizer: Tokenizer,
    presets: PresetStore,
    system_prompt: str,
    user_name: str = "User",
) -> TokenEstimate | None:
    """System prompt plus the stage prompt, counted. None when there is nothing to count."""
    if state.character is None:
        return None
    prompt = build_stage_prompt(state, stage, presets, user_name)
    if not prompt:
        return None
    try:
        tokens = await tokenizer(f"{system_prompt}\n\n{prompt}")
    except Exception as e:
        logger.warning("token count failed for %s: %s", stage, e)
        return None
    context = tokenizer.context_size
    percentage = round(tokens / context * 100) if context else 0
    return TokenEstimate(prompt_tokens=tokens, context_size=context, percentage=percentage)
