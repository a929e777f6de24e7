"""Configuration management for the task loop."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError


def get_global_config_path() -> Path:
    """Get path to global config: ~/.taskloop.json"""
    return Path.home() / ".taskloop.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.taskloop/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".taskloop" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}
    return {}


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for the task loop engine and its model client."""

    api_url: str = ""
    api_key: str = ""
    model: str = "gpt-4o"
    max_tokens: int = 8192
    temperature: float = 0.2
    workspace_path: Path = field(default_factory=lambda: Path.cwd())
    consecutive_mistake_limit: int = 3
    repetition_limit: int = 1
    auto_approve: List[str] = field(default_factory=list)
    default_mode: str = "code"
    checkpoint_dir: Optional[Path] = None
    confirm_completion: bool = True
    max_turns: int = 200

    def __post_init__(self):
        self.workspace_path = Path(self.workspace_path)
        if self.checkpoint_dir is None:
            self.checkpoint_dir = self.workspace_path / ".taskloop" / "checkpoints"
        self.checkpoint_dir = Path(self.checkpoint_dir)

    @classmethod
    def from_dict(cls, data: dict, workspace: Optional[Path] = None) -> "EngineConfig":
        try:
            return cls(
                api_url=data.get("api_url", ""),
                api_key=data.get("api_key", ""),
                model=data.get("model", "gpt-4o"),
                max_tokens=int(data.get("max_tokens", 8192)),
                temperature=float(data.get("temperature", 0.2)),
                workspace_path=workspace or Path(data.get("workspace_path") or Path.cwd()),
                consecutive_mistake_limit=int(data.get("consecutive_mistake_limit", 3)),
                repetition_limit=int(data.get("repetition_limit", 1)),
                auto_approve=_as_list(data.get("auto_approve")),
                default_mode=data.get("default_mode", "code"),
                checkpoint_dir=Path(data["checkpoint_dir"]) if data.get("checkpoint_dir") else None,
                confirm_completion=_as_bool(data.get("confirm_completion"), True),
                max_turns=int(data.get("max_turns", 200)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "EngineConfig":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.taskloop.json (global)
        2. workspace/.taskloop/config.json (workspace-specific)
        """
        config_data = {}
        config_data.update(load_json_config(get_global_config_path()))
        config_data.update(load_json_config(get_workspace_config_path(workspace)))
        return cls.from_dict(config_data, workspace=workspace)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, workspace: Optional[Path] = None) -> "EngineConfig":
        """Load configuration from environment variables, falling back to JSON."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        api_url = os.getenv("TASKLOOP_API_URL", "")
        api_key = os.getenv("TASKLOOP_API_KEY", "")
        if not api_url or not api_key:
            return cls.from_json(workspace)

        base = cls.from_json(workspace)
        overrides = {
            "api_url": api_url,
            "api_key": api_key,
            "model": os.getenv("TASKLOOP_MODEL", base.model),
            "max_tokens": os.getenv("TASKLOOP_MAX_TOKENS", base.max_tokens),
            "temperature": os.getenv("TASKLOOP_TEMPERATURE", base.temperature),
            "consecutive_mistake_limit": os.getenv("TASKLOOP_MISTAKE_LIMIT", base.consecutive_mistake_limit),
            "repetition_limit": base.repetition_limit,
            "auto_approve": os.getenv("TASKLOOP_AUTO_APPROVE") or base.auto_approve,
            "default_mode": os.getenv("TASKLOOP_MODE", base.default_mode),
            "checkpoint_dir": str(base.checkpoint_dir),
            "confirm_completion": base.confirm_completion,
            "max_turns": os.getenv("TASKLOOP_MAX_TURNS", base.max_turns),
        }
        return cls.from_dict(overrides, workspace=workspace or base.workspace_path)

    def validate(self) -> bool:
        """Validate the configuration."""
        if not self.api_url:
            raise ConfigError("API URL is required (TASKLOOP_API_URL or api_url in ~/.taskloop.json).")
        if not self.api_key:
            raise ConfigError("API key is required (TASKLOOP_API_KEY or api_key in ~/.taskloop.json).")
        if self.consecutive_mistake_limit < 1:
            raise ConfigError("consecutive_mistake_limit must be at least 1.")
        if self.repetition_limit < 1:
            raise ConfigError("repetition_limit must be at least 1.")
        if self.max_turns < 1:
            raise ConfigError("max_turns must be at least 1.")
        return True
