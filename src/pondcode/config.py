"""Configuration management for pondcode."""

import json
import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

from .logger import get_logger

log = get_logger("config")

DEFAULT_BASE_URL = "http://localhost:3000"


def get_global_dir() -> Path:
    """Get the per-user state directory: ~/.pondcode"""
    return Path(os.environ.get("POND_HOME") or Path.home() / ".pondcode")


def get_config_path() -> Path:
    """Get path to the persisted session config: ~/.pondcode/config.json"""
    return get_global_dir() / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
        except (json.JSONDecodeError, IOError) as e:
            log.warning("ignoring unreadable config %s: %s", path, e)
    return {}


# JSON keys are camelCase on disk; fields are snake_case here.
_JSON_KEYS = {
    "base_url": "baseUrl",
    "api_key": "apiKey",
    "token": "token",
    "device_code": "deviceCode",
    "app_id": "appId",
    "conversation_id": "conversationId",
    "mode": "mode",
    "execution_mode": "executionMode",
    "max_tool_depth": "maxToolDepth",
    "login_poll_interval": "loginPollInterval",
    "history_enabled": "historyEnabled",
}


@dataclass
class Config:
    """Session configuration, read at worker startup and rewritten after each change."""

    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None
    token: Optional[str] = None
    device_code: Optional[str] = None
    app_id: Optional[str] = None
    conversation_id: Optional[str] = None
    mode: str = "builder"            # general | builder
    execution_mode: str = "local"    # local | hosted
    max_tool_depth: int = 16
    login_poll_interval: float = 2.0
    history_enabled: bool = True

    def __post_init__(self):
        # field -> (value from the file, value from the environment)
        self._env_overrides: Dict[str, Tuple[Any, Any]] = {}

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        kwargs = {}
        for f in fields(cls):
            key = _JSON_KEYS[f.name]
            if key in data and data[key] is not None:
                kwargs[f.name] = data[key]
        config = cls(**kwargs)
        config.max_tool_depth = int(config.max_tool_depth)
        config.login_poll_interval = float(config.login_poll_interval)
        if config.mode not in ("general", "builder"):
            config.mode = "builder"
        if config.execution_mode not in ("local", "hosted"):
            config.execution_mode = "local"
        return config

    def to_dict(self) -> dict:
        """Camel-cased dict with unset fields omitted."""
        data = asdict(self)
        for key, (file_value, env_value) in self._env_overrides.items():
            if data[key] == env_value:
                data[key] = file_value
        return {_JSON_KEYS[key]: value for key, value in data.items() if value is not None}

    def _override(self, key: str, value: Any) -> None:
        file_value = self._env_overrides.get(key, (getattr(self, key), None))[0]
        self._env_overrides[key] = (file_value, value)
        setattr(self, key, value)

    def apply_env(self, env_path: Optional[Path] = None) -> "Config":
        """Apply POND_* environment overrides, honouring a .env file in the cwd.

        POND_API_KEY is read by the API client per request and is never
        copied into the saved file. Overridden fields keep their file value
        when the config is saved again.
        """
        env_path = env_path or Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
        if os.getenv("POND_BASE_URL"):
            self._override("base_url", os.environ["POND_BASE_URL"])
        if os.getenv("POND_EXECUTION_MODE") in ("local", "hosted"):
            self._override("execution_mode", os.environ["POND_EXECUTION_MODE"])
        if os.getenv("POND_MAX_TOOL_DEPTH"):
            self._override("max_tool_depth", int(os.environ["POND_MAX_TOOL_DEPTH"]))
        return self


class ConfigStore:
    """Reads and rewrites the JSON config file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else get_config_path()

    def load(self, apply_env: bool = True) -> Config:
        config = Config.from_dict(load_json_config(self.path))
        if apply_env:
            config.apply_env()
        return config

    def save(self, config: Config) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
        log.debug("config saved: %s", self.path)
