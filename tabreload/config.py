from __future__ import annotations

import json
import os
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/tabreload/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "db_path": "TABRELOAD_DB",
    "api_base_url": "TABRELOAD_API_BASE_URL",
    "refresh_url": "TABRELOAD_REFRESH_URL",
    "collection_title": "TABRELOAD_COLLECTION_TITLE",
    "link_scheme": "TABRELOAD_LINK_SCHEME",
    "page_size": "TABRELOAD_PAGE_SIZE",
    "request_pause_ms": "TABRELOAD_REQUEST_PAUSE_MS",
    "max_retries": "TABRELOAD_MAX_RETRIES",
    "backoff_base_ms": "TABRELOAD_BACKOFF_BASE_MS",
    "token_expiry_buffer_ms": "TABRELOAD_TOKEN_EXPIRY_BUFFER_MS",
    "backup_debounce_ms": "TABRELOAD_BACKUP_DEBOUNCE_MS",
    "badge_tick_ms": "TABRELOAD_BADGE_TICK_MS",
    "default_interval_minutes": "TABRELOAD_DEFAULT_INTERVAL_MINUTES",
    "http_timeout_s": "TABRELOAD_HTTP_TIMEOUT_S",
}

_INT_KEYS = {
    "page_size",
    "request_pause_ms",
    "max_retries",
    "backoff_base_ms",
    "token_expiry_buffer_ms",
    "backup_debounce_ms",
    "badge_tick_ms",
    "default_interval_minutes",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("TABRELOAD_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class TabReloadConfig:
    db_path: str = "~/.tabreload.sqlite"
    api_base_url: str = "https://api.raindrop.io/rest/v1"
    refresh_url: str = "https://ohauth.vercel.app/oauth/raindrop/refresh"
    collection_title: str = "Tab Reload"
    link_scheme: str = "tabreload"
    page_size: int = 50
    request_pause_ms: int = 100
    max_retries: int = 5
    backoff_base_ms: int = 1000
    token_expiry_buffer_ms: int = 10 * 60 * 1000
    backup_debounce_ms: int = 5000
    badge_tick_ms: int = 1000
    default_interval_minutes: int = 30
    http_timeout_s: float = 10.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> TabReloadConfig:
    cfg = TabReloadConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError as exc:
            warnings.warn(
                f"Invalid config file {config_path}: {exc}; using defaults",
                RuntimeWarning,
                stacklevel=2,
            )
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: TabReloadConfig, data: dict[str, Any]) -> TabReloadConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key == "http_timeout_s":
            cfg.http_timeout_s = _parse_float(value, cfg.http_timeout_s, key=key)
            continue
        if isinstance(value, str):
            setattr(cfg, key, value.strip() or getattr(cfg, key))
    return cfg
