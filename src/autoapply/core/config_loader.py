"""Load and query AutoApply JSON config files."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("config/config.json")
DEFAULT_DB_PATH = "data/autoapply.db"
_CONFIG_CACHE: dict[Path, tuple[int, dict[str, Any]]] = {}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    """Resolve config path against repo root.

    Priority:
    1. explicit function argument
    2. `AUTOAPPLY_CONFIG_PATH` environment variable
    3. default `config/config.json`
    """
    raw_path: str | Path | None = config_path or os.getenv("AUTOAPPLY_CONFIG_PATH")
    candidate = Path(raw_path) if raw_path else DEFAULT_CONFIG_PATH
    if not candidate.is_absolute():
        candidate = _repo_root() / candidate
    return candidate.resolve()


def load_config(config_path: str | Path | None = None, *, use_cache: bool = True) -> dict[str, Any]:
    """Load config JSON as a dictionary."""
    resolved = resolve_config_path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {resolved}")

    mtime_ns = resolved.stat().st_mtime_ns
    if use_cache and resolved in _CONFIG_CACHE:
        cached_mtime_ns, cached_payload = _CONFIG_CACHE[resolved]
        if cached_mtime_ns == mtime_ns:
            return cached_payload

    try:
        payload = json.loads(resolved.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file: {resolved}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"Config root must be a JSON object: {resolved}")

    _CONFIG_CACHE[resolved] = (mtime_ns, payload)
    return payload


def clear_config_cache() -> None:
    """Clear in-memory config cache."""
    _CONFIG_CACHE.clear()


def _load_or_empty(config: dict[str, Any] | None) -> dict[str, Any]:
    if config is not None:
        return config
    try:
        return load_config()
    except (FileNotFoundError, ValueError):
        return {}


def _section(name: str, config: dict[str, Any] | None = None) -> dict[str, Any]:
    payload = _load_or_empty(config)
    value = payload.get(name)
    return value if isinstance(value, dict) else {}


def get_database_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("database", config)


def get_database_path(config: dict[str, Any] | None = None) -> Path:
    """Resolve the SQLite database path; relative paths are anchored at repo root."""
    raw = get_database_config(config).get("path")
    candidate = Path(raw) if isinstance(raw, str) and raw.strip() else Path(DEFAULT_DB_PATH)
    if not candidate.is_absolute():
        candidate = _repo_root() / candidate
    return candidate.resolve()


def get_application_queue_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("application_queue", config)


def get_discovery_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("discovery", config)


def get_apply_service_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    return _section("apply_service", config)


def get_executor_path(config: dict[str, Any] | None = None) -> str | None:
    """Return `module:Class` import path of the configured application executor."""
    value = get_apply_service_config(config).get("executor")
    return value.strip() if isinstance(value, str) and value.strip() else None


def get_cron_secret(config: dict[str, Any] | None = None) -> str | None:
    value = get_apply_service_config(config).get("cron_secret")
    return value if isinstance(value, str) and value else None


def get_provider_config(provider_name: str, config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return provider config from `model_providers`."""
    payload = config if config is not None else load_config()
    providers = payload.get("model_providers")
    if not isinstance(providers, dict):
        raise ValueError("Config model_providers must be a JSON object.")

    provider = providers.get(provider_name)
    if not isinstance(provider, dict):
        raise ValueError(f"Model provider '{provider_name}' is not defined.")
    return provider


def get_job_search_config(source_name: str, config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return one job-search source block from `job_search`."""
    block = _section("job_search", config).get(source_name)
    return block if isinstance(block, dict) else {}
