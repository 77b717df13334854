"""Persisted configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict

from .models import Config

CONFIG_PATH = (Path.home() / ".callnote" / "config.json").expanduser()

# Environment variables that override values from the config file.
ENV_OVERRIDES: Dict[str, str] = {
    "CALLNOTE_DASHSCOPE_API_KEY": "dashscope_api_key",
    "CALLNOTE_LLM_API_KEY": "llm_api_key",
    "CALLNOTE_LLM_MODEL": "llm_model",
    "CALLNOTE_ASR_MODEL": "asr_model",
    "CALLNOTE_FEISHU_ACCESS_TOKEN": "feishu_access_token",
    "CALLNOTE_APP_HOSTNAME": "app_hostname",
    "CALLNOTE_LOG_LEVEL": "log_level",
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


class ConfigurationMissingError(ConfigError):
    """Raised before any network call when a required credential is not set."""


def load_config(apply_env: bool = True) -> Config:
    payload: Dict[str, Any] = {}
    if CONFIG_PATH.exists():
        try:
            payload = json.loads(CONFIG_PATH.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    if apply_env:
        _apply_env_overrides(payload)
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    return Config(**payload)


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2, ensure_ascii=False))


def update_config(**kwargs: Any) -> Config:
    # Environment overrides are not written back to disk.
    config = load_config(apply_env=False)
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return config


def _apply_env_overrides(payload: Dict[str, Any]) -> None:
    for env_key, attr in ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value:
            payload[attr] = value
