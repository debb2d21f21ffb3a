"""Tests for character_tools.config — settings file and environment."""

import json

import pytest

from character_tools.config import (
    DEFAULT_PROVIDER_URL,
    InvalidSettings,
    Settings,
    SettingsStore,
    load_env,
)
from character_tools.presets import DEFAULT_SYSTEM_PROMPT


class TestSettingsStore:
    def test_defaults_without_file(self, tmp_path) -> None:
        settings = SettingsStore(tmp_path).get()
        assert settings == Settings()
        assert settings.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert settings.stage_defaults["score"].prompt_preset_id == "builtin_score_default"

    def test_update_persists_and_merges(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        store.update({"user_name": "Alex", "generation_config": {"temperature": 0.4}})
        settings = SettingsStore(tmp_path).get()
        assert settings.user_name == "Alex"
        assert settings.generation_config.temperature == 0.4
        assert settings.generation_config.max_tokens == 4096

    def test_stage_defaults_merge_per_stage(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        settings = store.update({"stage_defaults": {"rewrite": {"custom_prompt": "Mine"}}})
        assert settings.stage_defaults["rewrite"].custom_prompt == "Mine"
        assert settings.stage_defaults["rewrite"].prompt_preset_id == "builtin_rewrite_default"
        assert settings.stage_defaults["score"].prompt_preset_id == "builtin_score_default"

    def test_unknown_keys_ignored(self, tmp_path) -> None:
        settings = SettingsStore(tmp_path).update({"nonsense": 1})
        assert settings == Settings()

    def test_schema_presets_stored_by_alias(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        store.update({"schema_presets": [{
            "id": "schema_mine", "name": "Mine",
            "schema": {"name": "Mine", "value": {"type": "object"}},
        }]})
        stored = json.loads(store.path.read_text())
        assert stored["schema_presets"][0]["schema"]["name"] == "Mine"
        assert store.get().schema_presets[0].schema_.name == "Mine"

    def test_invalid_json_falls_back(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        store.path.write_text("{broken")
        assert store.get() == Settings()

    def test_mismatched_file_falls_back(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        store.path.write_text(json.dumps({"generation_config": {"temperature": "hot"}}))
        assert store.get() == Settings()

    def test_invalid_user_preset_rejected(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        with pytest.raises(InvalidSettings) as exc:
            store.update({"prompt_presets": [{"name": "", "prompt": "   "}]})
        assert exc.value.errors == [
            "Prompt preset '': Name is required",
            "Prompt preset '': Prompt is required",
        ]
        assert not store.path.exists()

    def test_stored_presets_not_revalidated_on_other_updates(self, tmp_path) -> None:
        store = SettingsStore(tmp_path)
        store.path.write_text(json.dumps({"prompt_presets": [{"name": "Old", "prompt": " "}]}))
        assert store.update({"user_name": "Alex"}).prompt_presets[0].name == "Old"


class TestLoadEnv:
    def test_defaults(self, monkeypatch) -> None:
        for name in ("LLM_PROVIDER_URL", "LLM_API_KEY", "PORT"):
            monkeypatch.delenv(name, raising=False)
        env = load_env()
        assert env.provider_url == DEFAULT_PROVIDER_URL
        assert env.api_key == ""
        assert env.port == 13013

    def test_overrides(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LLM_PROVIDER_URL", "http://llm:8000")
        monkeypatch.setenv("LLM_HOST_MODEL", "local-model")
        env = load_env()
        assert env.data_dir == tmp_path
        assert env.provider_url == "http://llm:8000"
        assert env.host_model == "local-model"
