"""Configuration loading: built-in defaults, YAML file, environment overrides."""

from __future__ import annotations

import os
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

from cartwatch.logging_config import get_logger

LOGGER = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("cartwatch/config.yml")

_FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_CONFIG: dict[str, Any] = {
    "database": {
        "sqlite_path": "cartwatch.sqlite",
        "busy_timeout": 30,
    },
    "schedule": {"minutes": 1},
    "checks": {"max_concurrency": 10},
    "fetch": {
        "http_timeout": 5.0,
        "browser_timeout_ms": 40000,
        "settle_ms": 1000,
    },
    "notify": {
        "timeout": 5.0,
        "retry_attempts": 3,
    },
    "secrets": {"ttl_seconds": 3600},
    "api": {"host": "0.0.0.0", "port": 8000},
}

# (section, key, env var, parser)
_ENV_OVERRIDES: tuple[tuple[str, str, str, str], ...] = (
    ("database", "sqlite_path", "CARTWATCH_DB_PATH", "str"),
    ("schedule", "minutes", "CARTWATCH_SCHEDULE_MINUTES", "int"),
    ("checks", "max_concurrency", "CARTWATCH_MAX_CONCURRENCY", "int"),
    ("fetch", "http_timeout", "CARTWATCH_HTTP_TIMEOUT", "float"),
    ("fetch", "browser_timeout_ms", "CARTWATCH_BROWSER_TIMEOUT_MS", "int"),
    ("notify", "timeout", "CARTWATCH_NOTIFY_TIMEOUT", "float"),
    ("notify", "retry_attempts", "CARTWATCH_NOTIFY_RETRIES", "int"),
    ("secrets", "ttl_seconds", "CARTWATCH_SECRET_TTL", "int"),
    ("api", "port", "CARTWATCH_API_PORT", "int"),
)


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _deep_merge(default: Any, override: Any) -> Any:
    if not isinstance(default, dict) or not isinstance(override, dict):
        return deepcopy(override)

    merged: dict[str, Any] = deepcopy(default)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    for section, key, env_name, kind in _ENV_OVERRIDES:
        if os.getenv(env_name) is None:
            continue
        current = config.setdefault(section, {}).get(key)
        if kind == "int":
            config[section][key] = _env_int(env_name, current)
        elif kind == "float":
            config[section][key] = _env_float(env_name, current)
        else:
            config[section][key] = os.environ[env_name].strip() or current
    return config


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Return the merged configuration for *path* (or the default location)."""

    path = path or DEFAULT_CONFIG_PATH
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    else:
        LOGGER.warning("Configuration file %s not found; using defaults", path)
        data = {}

    merged = _deep_merge(DEFAULT_CONFIG, data) if data else deepcopy(DEFAULT_CONFIG)
    return _apply_env_overrides(merged)


def config_value(config: dict[str, Any], section: str, key: str) -> Any:
    """Look up ``section.key`` falling back to the built-in default."""

    value = (config.get(section) or {}).get(key)
    if value is None:
        return DEFAULT_CONFIG[section][key]
    return value
