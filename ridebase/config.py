import copy
import os
from pathlib import Path

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yaml"

DEFAULT_CONFIG = {
    "paths": {
        "db": "~/ridebase/data/ridebase.db",
        "import_storage": "~/ridebase/storage/imports",
        "photo_storage": "~/ridebase/storage/photos",
    },
    "imports": {
        "zip_max_entries": 500,
        "zip_max_total_bytes": 300 * 1024 * 1024,
        "bulk_export_max_entries": 20000,
        "bulk_export_max_total_bytes": 5 * 1024 * 1024 * 1024,
        "fit_skippable_max_bytes": 2048,
    },
    "queue": {
        "enabled": True,
        "poll_ms": 2000,
        "concurrency": 2,
        "max_attempts": 3,
        "retry_base_ms": 5000,
        "retry_max_ms": 300000,
        "health_stale_ms": None,
    },
    "alerts": {
        "enabled": True,
        "webhook_url": None,
        "failed_24h_threshold": 5,
        "ready_threshold": 20,
        "poll_ms": 30000,
        "cooldown_ms": 300000,
        "timeout_s": 5,
    },
    "segments": {
        "min_distance_m": 600,
        "min_elevation_gain_m": 35,
        "min_avg_grade_pct": 3,
        "max_flat_distance_m": 180,
        "max_descent_m": 14,
        "max_distance_m": 18000,
        "max_elapsed_time_s": 7200,
        "manual_match_radius_m": 35,
    },
    "geocoding": {
        "provider": "none",
        "url": "https://nominatim.openstreetmap.org/reverse",
        "timeout_s": 2.2,
        "language": "de,en",
        "user_agent": "RideBase/1.0 (local-segments)",
        "cache_size": 2048,
    },
}


def _expand(value):
    """Recursively expand ~ and env vars in string values."""
    if isinstance(value, str):
        return os.path.expandvars(os.path.expanduser(value))
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_config() -> dict:
    """Built-in defaults, expanded, for running without a config file."""
    return _expand(copy.deepcopy(DEFAULT_CONFIG))


def load_config(path=None):
    """Load YAML config over the defaults, expanding ~ and $ENV_VARS in all string values."""
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return _expand(_merge(copy.deepcopy(DEFAULT_CONFIG), raw))


def _int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def queue_settings(config: dict | None) -> dict:
    """Queue worker settings with the clamps the worker relies on."""
    cfg = {**DEFAULT_CONFIG["queue"], **((config or {}).get("queue") or {})}
    poll_ms = max(250, _int(cfg.get("poll_ms"), 2000))
    retry_base_ms = max(250, _int(cfg.get("retry_base_ms"), 5000))
    stale = cfg.get("health_stale_ms")
    return {
        "enabled": bool(cfg.get("enabled", True)),
        "poll_ms": poll_ms,
        "concurrency": min(8, max(1, _int(cfg.get("concurrency"), 2))),
        "max_attempts": min(20, max(1, _int(cfg.get("max_attempts"), 3))),
        "retry_base_ms": retry_base_ms,
        "retry_max_ms": max(retry_base_ms, _int(cfg.get("retry_max_ms"), 300000)),
        "health_stale_ms": max(2000, _int(stale, poll_ms * 6)),
    }


def alert_settings(config: dict | None) -> dict:
    cfg = {**DEFAULT_CONFIG["alerts"], **((config or {}).get("alerts") or {})}
    webhook_url = (cfg.get("webhook_url") or "").strip()
    # An unset $VAR survives expansion verbatim
    if webhook_url.startswith("$"):
        webhook_url = ""
    return {
        "enabled": bool(cfg.get("enabled", True)),
        "webhook_url": webhook_url or None,
        "failed_24h_threshold": max(1, _int(cfg.get("failed_24h_threshold"), 5)),
        "ready_threshold": max(1, _int(cfg.get("ready_threshold"), 20)),
        "poll_ms": max(5000, _int(cfg.get("poll_ms"), 30000)),
        "cooldown_ms": max(1000, _int(cfg.get("cooldown_ms"), 300000)),
        "timeout_s": float(cfg.get("timeout_s") or 5),
    }


def section(config: dict | None, name: str) -> dict:
    """One config section merged over its defaults."""
    return {**DEFAULT_CONFIG.get(name, {}), **((config or {}).get(name) or {})}
