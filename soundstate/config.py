#!/usr/bin/env python3
"""
Unified configuration loader for soundstate.

Load order (first found wins):
  1) SOUNDSTATE_CONFIG (env, absolute or relative to CWD)
  2) <project_root>/config.yaml (derived from this file's location)
  3) <script_dir>/config.yaml (directory of the running script)
  4) ./config.yaml (current working directory)

Environment variables override file values when present. Relative paths in the
``paths`` and ``tools`` sections are resolved against ``paths.base_dir``.
"""
from __future__ import annotations

import copy
import logging
import math
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "base_dir": ".",
        "data_file": "volume_data.json",
        "dump_dir": ".",
        "static_dir": "public",
        "log_file": "server_logs.txt",
    },
    "tools": {
        "sound_volume_view": "SoundVolumeView.exe",
        "headset_control": "HeadsetControl.exe",
        "timeout_sec": 15.0,
    },
    "devices": {
        "canonical_names": ["Logitech G560", "Audeze Maxwell"],
        "battery_markers": ["Maxwell", "Audeze"],
    },
    "polling": {
        "startup_delay_sec": 5.0,
        "device_interval_sec": 3.0,
        "battery_interval_sec": 600.0,
        "battery_stagger_sec": 1.5,
        "battery_busy_retry_sec": 1.0,
        "battery_retry_sec": 20.0,
        "battery_max_attempts": 10,
    },
    "persistence": {
        "debounce_sec": 2.0,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8085,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("soundstate.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SOUNDSTATE_CONFIG")
    if env_cfg:
        try:
            search.append(Path(env_cfg).expanduser().resolve())
        except OSError:
            search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_float_like(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def _parse_int_like(value: Any) -> int | None:
    number = _parse_float_like(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    path_overrides = {
        "SOUNDSTATE_BASE_DIR": "base_dir",
        "SOUNDSTATE_DATA_FILE": "data_file",
        "SOUNDSTATE_DUMP_DIR": "dump_dir",
        "SOUNDSTATE_STATIC_DIR": "static_dir",
        "SOUNDSTATE_LOG_FILE": "log_file",
    }
    for env_name, key in path_overrides.items():
        value = os.getenv(env_name, "").strip()
        if value:
            cfg.setdefault("paths", {})[key] = value

    tool_overrides = {
        "SOUNDVOLUMEVIEW_PATH": "sound_volume_view",
        "HEADSETCONTROL_PATH": "headset_control",
    }
    for env_name, key in tool_overrides.items():
        value = os.getenv(env_name, "").strip()
        if value:
            cfg.setdefault("tools", {})[key] = value

    host = os.getenv("SOUNDSTATE_HOST", "").strip()
    if host:
        cfg.setdefault("web_server", {})["listen_host"] = host
    if "SOUNDSTATE_PORT" in os.environ:
        port = _parse_int_like(os.environ["SOUNDSTATE_PORT"])
        if port is not None and 0 < port < 65536:
            cfg.setdefault("web_server", {})["listen_port"] = port


def _normalize_numbers(cfg: Dict[str, Any]) -> None:
    """Replace unparseable numeric settings with their defaults."""
    for section in ("tools", "polling", "persistence", "web_server"):
        defaults = _DEFAULTS[section]
        current = cfg.get(section)
        if not isinstance(current, dict):
            cfg[section] = copy.deepcopy(defaults)
            continue
        for key, default in defaults.items():
            if isinstance(default, bool) or not isinstance(default, (int, float)):
                continue
            if isinstance(default, int):
                parsed: float | int | None = _parse_int_like(current.get(key))
            else:
                parsed = _parse_float_like(current.get(key))
            minimum = 1 if isinstance(default, int) else 0
            if parsed is None or parsed < minimum:
                if key in current:
                    log.warning(
                        "Invalid value for %s.%s (%r); using %r",
                        section,
                        key,
                        current.get(key),
                        default,
                    )
                current[key] = default
            else:
                current[key] = parsed


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (soundstate/ -> project root)
    this_dir = Path(__file__).resolve().parent
    project_root = this_dir.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _normalize_numbers(cfg)
    _cfg_cache = cfg
    return cfg


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


def resolve_path(cfg: Dict[str, Any], value: str | os.PathLike[str]) -> Path:
    """Resolve a configured path against ``paths.base_dir``."""
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return candidate
    base_dir = Path(str(cfg.get("paths", {}).get("base_dir") or ".")).expanduser()
    return base_dir / candidate


def string_list(value: Any, fallback: list[str]) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return list(fallback)
    items = [str(item).strip() for item in value if str(item).strip()]
    return items or list(fallback)


__all__ = [
    "active_config_path",
    "get_cfg",
    "reload_cfg",
    "resolve_path",
    "search_paths",
    "string_list",
]
