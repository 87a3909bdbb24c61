"""Config loader for tuneloop."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from .schema import PipelineConfig


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _read_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _apply_env_overrides(config_data: dict[str, Any]) -> None:
    data_dir = os.environ.get("TUNELOOP_DATA_DIR")
    if data_dir:
        config_data.setdefault("general", {})["data_dir"] = data_dir

    ollama_url = os.environ.get("TUNELOOP_OLLAMA_URL")
    if ollama_url:
        config_data.setdefault("inference", {})["base_url"] = ollama_url

    webhook = os.environ.get("DISCORD_WEBHOOK_URL")
    if webhook:
        config_data.setdefault("notifications", {}).setdefault("discord_webhook_url", webhook)

    if _parse_bool(os.environ.get("TUNELOOP_AUTO_PROMOTE")):
        config_data.setdefault("orchestrator", {})["auto_promote"] = True


def load_config(config_path: Path | None = None, merge_user: bool = True) -> dict[str, Any]:
    """Load configuration with basic precedence.

    Order (later wins): user config, local ``tuneloop.toml``, explicit path
    (argument or ``TUNELOOP_CONFIG_PATH``), environment overrides.
    """
    env_config = os.environ.get("TUNELOOP_CONFIG_PATH")
    if config_path is None and env_config:
        config_path = Path(env_config).expanduser()

    config_data: dict[str, Any] = {}

    if merge_user:
        user_path = Path.home() / ".config" / "tuneloop" / "config.toml"
        if user_path.exists():
            config_data = _deep_merge(config_data, _read_toml(user_path))

    local_path = Path("tuneloop.toml")
    if local_path.exists():
        config_data = _deep_merge(config_data, _read_toml(local_path))

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        config_data = _deep_merge(config_data, _read_toml(config_path))

    _apply_env_overrides(config_data)
    return config_data


def load_config_model(
    config_path: Path | None = None,
    merge_user: bool = True,
) -> PipelineConfig:
    """Load configuration and return a typed model."""
    data = load_config(config_path=config_path, merge_user=merge_user)
    return PipelineConfig.from_dict(data)
