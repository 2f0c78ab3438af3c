"""
Unified settings loader for lanrelay.

Load order (first found wins):
  1) LANRELAY_CONFIG (env, absolute or relative to CWD)
  2) /etc/lanrelay/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present. These are the
service's own settings; the relay server's XML config is read separately by
``lanrelay.relay_config``.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "relay": {
        "executable": "",
        "config_path": "",
        "process_names": ["icecast", "icecast2", "icecast.exe"],
        "install_record_path": "",
        "watch_poll_interval_sec": 1.0,
        "startup_timeout_sec": 8.0,
        "stop_timeout_sec": 5.0,
        "restart_wait_sec": 10.0,
        "probe_timeout_sec": 3.0,
        "intentional_stop_window_sec": 30.0,
        "watchdog_interval_sec": 10.0,
        "outage_grace_sec": 30.0,
    },
    "encoder": {
        "ffmpeg_path": "ffmpeg",
        "spawn_timeout_sec": 10.0,
        "grace_period_sec": 2.0,
        "stop_timeout_sec": 5.0,
        "default_bitrate": 192,
        "sample_rate": 44100,
        "channels": 2,
        "verify_devices": True,
    },
    "streams": {
        "store_path": "",
        "retention_hours": 24.0,
        "retention_sweep_interval_sec": 6 * 60 * 60.0,
    },
    "paths": {
        "state_dir": "config",
    },
    "logging": {
        "level": "INFO",
        "dev_mode": False,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("lanrelay")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _log.warning("ignoring unreadable settings file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    env_cfg = os.getenv("LANRELAY_CONFIG")
    candidates = [Path(env_cfg).expanduser()] if env_cfg else []
    candidates += [
        Path("/etc/lanrelay/config.yaml"),
        project_root / "config.yaml",
        Path.cwd() / "config.yaml",
    ]
    unique: Dict[Path, None] = {}
    for candidate in candidates:
        try:
            candidate = candidate.resolve()
        except OSError:
            pass
        unique.setdefault(candidate, None)
    return list(unique)


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "LANRELAY_STATE_DIR" in os.environ:
        value = os.environ["LANRELAY_STATE_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["state_dir"] = value

    env_map = {
        "RELAY_EXE_PATH": ("relay", "executable", str),
        "RELAY_CONFIG_PATH": ("relay", "config_path", str),
        "RELAY_STOP_TIMEOUT_SEC": ("relay", "stop_timeout_sec", float),
        "RELAY_OUTAGE_GRACE_SEC": ("relay", "outage_grace_sec", float),
        "FFMPEG_PATH": ("encoder", "ffmpeg_path", str),
        "ENCODER_GRACE_PERIOD_SEC": ("encoder", "grace_period_sec", float),
        "ENCODER_SPAWN_TIMEOUT_SEC": ("encoder", "spawn_timeout_sec", float),
        "STREAM_RETENTION_HOURS": ("streams", "retention_hours", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            pass


def _first_existing(paths: list[Path]) -> Path | None:
    for path in paths:
        try:
            if path.is_file():
                return path
        except OSError:
            continue
    return None


def get_cfg() -> Dict[str, Any]:
    """Return the merged settings, loading them on first use."""

    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    # lanrelay/ -> project root
    project_root = Path(__file__).resolve().parent.parent
    _search_paths = _candidate_search_paths(project_root)

    merged = copy.deepcopy(_DEFAULTS)
    # Lowest priority first so earlier search entries override later ones.
    for path in _search_paths[::-1]:
        merged = _deep_merge(merged, _load_yaml_if_exists(path))
    _apply_env_overrides(merged)

    _active_config_path = _first_existing(_search_paths)
    _cfg_cache = merged
    return merged


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def state_dir(cfg: Dict[str, Any] | None = None) -> Path:
    """Directory holding the install record and the stream store."""

    cfg = cfg if cfg is not None else get_cfg()
    raw = str(cfg.get("paths", {}).get("state_dir") or "config")
    return Path(raw).expanduser()


def section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name)
    if isinstance(value, dict):
        return value
    return {}


def as_float(value: Any, default: float, *, minimum: float | None = None) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result:  # NaN
        return default
    if minimum is not None and result < minimum:
        return minimum
    return result


def as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default
