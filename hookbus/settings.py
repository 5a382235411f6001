"""Load hookbus settings from config/settings.yaml layered over built-in defaults."""

import os
from pathlib import Path
from typing import Any

import yaml

_DEFAULTS: dict[str, Any] = {
    "storage": {
        "db_path": "data/hookbus.db",
        "busy_timeout": 5000,
    },
    "router": {
        "poll_interval": 1.0,
        "batch_size": 20,
        "handler_timeout": 30.0,
        "max_concurrent_events": 8,
    },
    "replay": {
        "max_retries": 3,
        "batch_size": 100,
        "stale_timeout": 300,
    },
    "webhooks": {
        "timeout": 10.0,
        "max_failures": 5,
        "backoff_minutes": [1, 5, 15, 60, 360],
        # Endpoint failures fail the owning event (see DESIGN.md)
        "fail_event_on_delivery_error": True,
        "subscribe_pattern": "*",
        "header_prefix": "X-Hookbus",
    },
    "logging": {
        "file": "data/logs/hookbus.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
        # Per-logger overrides; httpx logs every request at INFO
        "levels": {"httpx": "WARNING", "httpcore": "WARNING"},
    },
}

CONFIG_DIR_ENV = "HOOKBUS_CONFIG_DIR"

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a deep copy of default settings."""
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'webhooks.timeout')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def reload_settings() -> None:
    """Clear the settings cache. Call after config files change."""
    global _cached
    _cached = None


def _default_config_dir() -> Path:
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override)
    return Path(__file__).resolve().parent.parent / "config"


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from <config_dir>/settings.yaml. Returns merged defaults + file values."""
    global _cached
    if _cached is not None and config_dir is None:
        return _cached

    path = (config_dir or _default_config_dir()) / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError):
            pass

    if config_dir is None:
        _cached = result
    return result


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj
