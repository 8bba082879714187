from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/lessonsync/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "api_base_url": "LESSONSYNC_API_BASE_URL",
    "api_token": "LESSONSYNC_API_TOKEN",
    "db_path": "LESSONSYNC_DB",
    "max_sync_attempts": "LESSONSYNC_MAX_SYNC_ATTEMPTS",
    "sync_workers": "LESSONSYNC_SYNC_WORKERS",
    "request_timeout_s": "LESSONSYNC_REQUEST_TIMEOUT_S",
    "list_page_size": "LESSONSYNC_LIST_PAGE_SIZE",
}

_INT_KEYS = {"max_sync_attempts", "sync_workers", "list_page_size"}
_FLOAT_KEYS = {"request_timeout_s"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("LESSONSYNC_CONFIG", DEFAULT_CONFIG_PATH))
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
class LessonSyncConfig:
    api_base_url: str = "http://localhost:3001/api"
    api_token: str | None = None
    db_path: str | None = None
    # Consecutive failures allowed before a pending write is given up on.
    max_sync_attempts: int = 3
    sync_workers: int = 2
    request_timeout_s: float = 10.0
    list_page_size: int = 50


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


def load_config(path: Path | None = None) -> LessonSyncConfig:
    cfg = LessonSyncConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = read_config_file(config_path)
        except ValueError as exc:
            warnings.warn(
                f"Invalid config file {config_path}: {exc}", RuntimeWarning, stacklevel=2
            )
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: LessonSyncConfig, data: dict[str, Any]) -> LessonSyncConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key == "api_token":
            token = str(value).strip() if value is not None else ""
            cfg.api_token = token or None
            continue
        setattr(cfg, key, value)
    return cfg
