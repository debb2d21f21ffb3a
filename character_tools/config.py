"""Settings and environment.

Settings are stored as {data_dir}/config.json. Reads return the defaults
merged with whatever is stored; updates are partial merges and return the
full settings. Nested objects (generation_config, stage_defaults) merge per
key, lists (user presets) replace wholesale.

Environment (.env at the repo root is loaded by the app and launcher):

    DATA_DIR          settings and history location (default ./data)
    LLM_PROVIDER_URL  OpenAI-compatible base URL for both backends
    LLM_API_KEY       bearer token, optional
    LLM_HOST_MODEL    model name sent by the host-default backend
    HOST, PORT        dev server bind address
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .llm import GenerationConfig
from .models import STAGES, StageConfig, StageName
from .presets import (
    DEFAULT_REFINEMENT_PROMPT,
    DEFAULT_STAGE_DEFAULTS,
    DEFAULT_SYSTEM_PROMPT,
    PromptPreset,
    SchemaPreset,
    validate_user_presets,
)

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"
DEFAULT_PROVIDER_URL = "http://localhost:5001"


def _default_stage_defaults() -> dict[StageName, StageConfig]:
    return {stage: DEFAULT_STAGE_DEFAULTS[stage].model_copy() for stage in STAGES}


class Settings(BaseModel):
    use_current_settings: bool = True
    generation_config: GenerationConfig = Field(default_factory=GenerationConfig)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    refinement_prompt: str = DEFAULT_REFINEMENT_PROMPT
    stage_defaults: dict[StageName, StageConfig] = Field(default_factory=_default_stage_defaults)
    prompt_presets: list[PromptPreset] = Field(default_factory=list)
    schema_presets: list[SchemaPreset] = Field(default_factory=list)
    user_name: str = "User"
    debug_mode: bool = False


class EnvConfig(BaseModel):
    data_dir: Path
    provider_url: str
    api_key: str = ""
    host_model: str = ""
    host: str = "0.0.0.0"
    port: int = 13013


def load_env() -> EnvConfig:
    return EnvConfig(
        data_dir=Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR))),
        provider_url=os.getenv("LLM_PROVIDER_URL", DEFAULT_PROVIDER_URL),
        api_key=os.getenv("LLM_API_KEY", ""),
        host_model=os.getenv("LLM_HOST_MODEL", ""),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "13013")),
    )


class InvalidSettings(ValueError):
    """Settings update rejected; errors lists each problem."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class SettingsStore:
    """config.json under a data directory."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._data_dir / "config.json"

    def get(self) -> Settings:
        """Read settings, returning defaults merged with stored values."""
        settings = Settings()
        if not self.path.is_file():
            return settings
        try:
            stored = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            logger.warning("config.json is not valid JSON, using defaults: %s", e)
            return settings
        if not isinstance(stored, dict):
            return settings
        try:
            return self._merge(settings, stored)
        except ValidationError as e:
            logger.warning("config.json does not match settings, using defaults: %s", e)
            return settings

    def update(self, fields: dict[str, Any]) -> Settings:
        """Merge fields into settings and persist. Returns full settings.

        Raises ValidationError for malformed fields and InvalidSettings when
        incoming user presets fail preset validation.
        """
        settings = self._merge(self.get(), fields)
        if "prompt_presets" in fields or "schema_presets" in fields:
            errors = validate_user_presets(settings.prompt_presets, settings.schema_presets)
            if errors:
                raise InvalidSettings(errors)
        self.path.write_text(settings.model_dump_json(indent=2, by_alias=True))
        logger.debug("settings updated keys=%s", sorted(fields))
        return settings

    @staticmethod
    def _merge(settings: Settings, fields: dict[str, Any]) -> Settings:
        data = settings.model_dump(by_alias=True)
        for key, value in fields.items():
            if key not in Settings.model_fields:
                continue
            if key == "generation_config" and isinstance(value, dict):
                data[key].update(value)
            elif key == "stage_defaults" and isinstance(value, dict):
                for stage, cfg in value.items():
                    if stage in data[key] and isinstance(cfg, dict):
                        data[key][stage].update(cfg)
            else:
                data[key] = value
        return Settings.model_validate(data)
