"""Configuration loader — YAML file + env override."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from expensebot.core.config.schema import Config

_SEARCH_PATHS = (
    Path("config.yaml"),
    Path("~/.expensebot/config.yaml"),
)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    Resolution order for config file:
        1. Explicit ``config_path`` argument
        2. ``EXPENSEBOT_CONFIG`` env variable
        3. ``./config.yaml`` in cwd, then ``~/.expensebot/config.yaml``

    Values priority (handled by pydantic-settings):
        env vars  >  .env file  >  YAML  >  defaults
    """
    path = _resolve_path(config_path)
    return Config(**_load_yaml(path))


def _resolve_path(config_path: str | Path | None = None) -> Path | None:
    if config_path:
        return Path(config_path).expanduser()

    env = os.environ.get("EXPENSEBOT_CONFIG")
    if env:
        return Path(env).expanduser()

    for candidate in _SEARCH_PATHS:
        candidate = candidate.expanduser()
        if candidate.exists():
            return candidate
    return None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    """Load YAML mapping; a missing file yields an empty dict."""
    if not path or not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data
