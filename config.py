"""JSON-based config store with environment overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from models import SessionConfig

CONFIG_DIR = Path.home() / ".config" / "kitchen_voice"

# Config key -> environment variable that overrides it.
ENV_OVERRIDES = {
    "api_key": "DEEPGRAM_API_KEY",
    "supabase_url": "SUPABASE_URL",
    "supabase_anon_key": "SUPABASE_ANON_KEY",
    "supabase_access_token": "SUPABASE_ACCESS_TOKEN",
    "dev_mode": "KITCHEN_VOICE_DEV_MODE",
}

DEFAULTS: dict[str, Any] = {
    "api_key": "",
    "supabase_url": "",
    "supabase_anon_key": "",
    "supabase_access_token": "",
    "dev_mode": False,
    "model": "nova-2",
    "language": "en",
    "diarize": False,
    "max_retries": 3,
    "retry_delay_s": 1.0,
    "timeout_s": 30.0,
    "connection_timeout_s": 10.0,
    "max_connection_attempts": 5,
    "enable_offline_mode": True,
}

_TRUE_STRINGS = ("1", "true", "yes", "on")


def get_config_dir() -> Path:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return CONFIG_DIR


def load_env(dotenv_path: Path | None = None) -> None:
    """Load a ``.env`` file into ``os.environ`` without clobbering real env vars."""
    load_dotenv(dotenv_path=dotenv_path, override=False)


class JsonConfigStore:
    def __init__(self, path: Path | None = None, use_env: bool = True) -> None:
        self._path = path or CONFIG_DIR / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._use_env = use_env

    @property
    def path(self) -> Path:
        return self._path

    def get_api_key(self) -> str:
        return str(self.get("api_key"))

    def set_api_key(self, key: str) -> None:
        self.set("api_key", key)

    def get(self, name: str) -> Any:
        env_name = ENV_OVERRIDES.get(name)
        if self._use_env and env_name:
            env_value = os.environ.get(env_name)
            if env_value:
                return self._coerce(name, env_value)
        data = self._read_all()
        return data.get(name, DEFAULTS.get(name))

    def set(self, name: str, value: Any) -> None:
        data = self._read_all()
        data[name] = value
        self._write_all(data)

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            model=str(self.get("model")),
            language=str(self.get("language")),
            diarize=bool(self.get("diarize")),
        )

    def status_options(self) -> dict[str, Any]:
        return {
            "max_retries": int(self.get("max_retries")),
            "retry_delay_s": float(self.get("retry_delay_s")),
            "timeout_s": float(self.get("timeout_s")),
            "connection_timeout_s": float(self.get("connection_timeout_s")),
            "max_connection_attempts": int(self.get("max_connection_attempts")),
            "enable_offline_mode": bool(self.get("enable_offline_mode")),
        }

    def _coerce(self, name: str, raw: str) -> Any:
        if isinstance(DEFAULTS.get(name), bool):
            return raw.strip().lower() in _TRUE_STRINGS
        return raw

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
