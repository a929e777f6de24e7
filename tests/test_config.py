"""Tests for configuration loading."""

import json
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from taskloop.config import EngineConfig, load_json_config
from taskloop.errors import ConfigError

ENV_VARS = [
    "TASKLOOP_API_URL", "TASKLOOP_API_KEY", "TASKLOOP_MODEL", "TASKLOOP_MAX_TOKENS",
    "TASKLOOP_TEMPERATURE", "TASKLOOP_MISTAKE_LIMIT", "TASKLOOP_AUTO_APPROVE",
    "TASKLOOP_MODE", "TASKLOOP_MAX_TURNS",
]


@pytest.fixture
def isolated(monkeypatch, tmp_path):
    """No real home config and no TASKLOOP_* variables leaking in or out."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", lambda: home)
    for name in ENV_VARS:
        # setenv first so monkeypatch restores the original state, even for
        # values a .env file adds later.
        monkeypatch.setenv(name, "x")
        monkeypatch.delenv(name)
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return home, workspace


class TestDefaults:

    def test_defaults(self, tmp_path):
        config = EngineConfig(workspace_path=tmp_path)
        assert config.consecutive_mistake_limit == 3
        assert config.repetition_limit == 1
        assert config.default_mode == "code"
        assert config.confirm_completion is True
        assert config.max_turns == 200
        assert config.checkpoint_dir == tmp_path / ".taskloop" / "checkpoints"

    def test_from_dict_coerces_values(self, tmp_path):
        config = EngineConfig.from_dict({
            "max_tokens": "1024",
            "temperature": "0.5",
            "auto_approve": "read_file, list_files",
            "confirm_completion": "false",
        }, workspace=tmp_path)
        assert config.max_tokens == 1024
        assert config.temperature == 0.5
        assert config.auto_approve == ["read_file", "list_files"]
        assert config.confirm_completion is False

    def test_from_dict_rejects_bad_values(self, tmp_path):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict({"max_tokens": "lots"}, workspace=tmp_path)


class TestJsonConfig:

    def test_workspace_overrides_global(self, isolated):
        home, workspace = isolated
        (home / ".taskloop.json").write_text(json.dumps({"model": "global-model", "max_turns": 10}))
        ws_config = workspace / ".taskloop" / "config.json"
        ws_config.parent.mkdir()
        ws_config.write_text(json.dumps({"model": "workspace-model"}))

        config = EngineConfig.from_json(workspace)
        assert config.model == "workspace-model"
        assert config.max_turns == 10
        assert config.workspace_path == workspace

    def test_invalid_json_is_ignored(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{oops")
        assert load_json_config(path) == {}
        assert load_json_config(tmp_path / "missing.json") == {}


class TestEnvConfig:

    def test_env_vars_override_json(self, isolated, monkeypatch):
        home, workspace = isolated
        (home / ".taskloop.json").write_text(json.dumps({"model": "json-model", "max_turns": 7}))
        monkeypatch.setenv("TASKLOOP_API_URL", "https://api.example.com/v1")
        monkeypatch.setenv("TASKLOOP_API_KEY", "sk-test")
        monkeypatch.setenv("TASKLOOP_MODEL", "env-model")
        monkeypatch.setenv("TASKLOOP_MISTAKE_LIMIT", "5")
        monkeypatch.setenv("TASKLOOP_AUTO_APPROVE", "read_file,list_files")

        config = EngineConfig.from_env(env_path=workspace / ".env", workspace=workspace)
        assert config.api_url == "https://api.example.com/v1"
        assert config.model == "env-model"
        assert config.consecutive_mistake_limit == 5
        assert config.auto_approve == ["read_file", "list_files"]
        assert config.max_turns == 7
        assert config.validate()

    def test_dotenv_file(self, isolated):
        _, workspace = isolated
        env_file = workspace / ".env"
        env_file.write_text("TASKLOOP_API_URL=https://llm.local/v1\nTASKLOOP_API_KEY=abc\n"
                            "TASKLOOP_MODE=ask\n")
        config = EngineConfig.from_env(env_path=env_file, workspace=workspace)
        assert config.api_url == "https://llm.local/v1"
        assert config.api_key == "abc"
        assert config.default_mode == "ask"

    def test_missing_credentials_fall_back_to_json(self, isolated):
        home, workspace = isolated
        (home / ".taskloop.json").write_text(json.dumps({
            "api_url": "https://json.example/v1", "api_key": "k",
        }))
        config = EngineConfig.from_env(env_path=workspace / ".env", workspace=workspace)
        assert config.api_url == "https://json.example/v1"


class TestValidate:

    def test_requires_api_url_and_key(self, tmp_path):
        with pytest.raises(ConfigError, match="API URL"):
            EngineConfig(workspace_path=tmp_path, api_key="k").validate()
        with pytest.raises(ConfigError, match="API key"):
            EngineConfig(workspace_path=tmp_path, api_url="https://x").validate()

    def test_limits_must_be_positive(self, tmp_path):
        base = dict(workspace_path=tmp_path, api_url="https://x", api_key="k")
        with pytest.raises(ConfigError):
            EngineConfig(consecutive_mistake_limit=0, **base).validate()
        with pytest.raises(ConfigError):
            EngineConfig(max_turns=0, **base).validate()
