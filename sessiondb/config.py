from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/sessiondb/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "db_path": "SESSIONDB_DB",
    "heartbeat_interval_ms": "SESSIONDB_HEARTBEAT_INTERVAL_MS",
    "lease_timeout_ms": "SESSIONDB_LEASE_TIMEOUT_MS",
    "busy_timeout_ms": "SESSIONDB_BUSY_TIMEOUT_MS",
    "auto_heartbeat": "SESSIONDB_AUTO_HEARTBEAT",
    "claude_root": "SESSIONDB_CLAUDE_ROOT",
    "codex_root": "SESSIONDB_CODEX_ROOT",
    "collect_interval_ms": "SESSIONDB_COLLECT_INTERVAL_MS",
    "store_raw": "SESSIONDB_STORE_RAW",
    "log_level": "SESSIONDB_LOG_LEVEL",
}

_INT_KEYS = {
    "heartbeat_interval_ms",
    "lease_timeout_ms",
    "busy_timeout_ms",
    "collect_interval_ms",
}
_BOOL_KEYS = {"auto_heartbeat", "store_raw"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("SESSIONDB_CONFIG", DEFAULT_CONFIG_PATH))
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


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class SessionDbConfig:
    db_path: str | None = None
    # The lease timeout must stay well above the heartbeat interval so normal
    # jitter never looks like a crashed writer.
    heartbeat_interval_ms: int = 10_000
    lease_timeout_ms: int = 30_000
    busy_timeout_ms: int = 5_000
    auto_heartbeat: bool = True
    claude_root: str = "~/.claude/projects"
    codex_root: str = "~/.codex/sessions"
    collect_interval_ms: int = 15_000
    store_raw: bool = True
    log_level: str = "WARNING"


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "off", "no"}


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.strip().lower() in _TRUE_VALUES:
        return True
    if value.strip().lower() in _FALSE_VALUES:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed < 0:
        warnings.warn(f"Negative int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str) and value.strip().lower() in _TRUE_VALUES | _FALSE_VALUES:
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> SessionDbConfig:
    cfg = SessionDbConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return cfg


def _apply_dict(cfg: SessionDbConfig, data: dict[str, Any]) -> SessionDbConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, value)
    return cfg


def _apply_env(cfg: SessionDbConfig) -> SessionDbConfig:
    return _apply_dict(cfg, get_env_overrides())
