#!/usr/bin/env python3
"""
Unified configuration loader for the game counter.

Load order (first found wins):
  1) GAMECOUNTER_CONFIG (env, absolute or relative to CWD)
  2) /etc/gamecounter/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_DEFAULTS: Dict[str, Any] = {
    "houses": {
        "house1": {"name": "House 1"},
        "house2": {"name": "House 2"},
    },
    "tvs": [
        {"id": "A1", "name": "TV A1", "house": "house1", "base_price": 20},
        {"id": "B1", "name": "TV B1", "house": "house1", "base_price": 20},
        {"id": "C1", "name": "TV C1", "house": "house1", "base_price": 15},
        {"id": "D1", "name": "TV D1", "house": "house1", "base_price": 15},
        {"id": "A2", "name": "TV A2", "house": "house2", "base_price": 20},
        {"id": "B2", "name": "TV B2", "house": "house2", "base_price": 20},
        {"id": "C2", "name": "TV C2", "house": "house2", "base_price": 20},
    ],
    "thresholds": {"house1": 2, "house2": 2},
    "business_day": {"start_hour": 7},
    "server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3001,
        "event_history_limit": 100,
        "liveness_window_ms": 10000,
        "cors_enabled": False,
    },
    "client": {
        "server_url": "http://127.0.0.1:3001",
        "cache_path": "~/.gamecounter/cache.json",
        "fetch_timeout_sec": 3.0,
        "worker_poll_interval_sec": 3.0,
        "owner_poll_interval_sec": 3.0,
        "frame_poll_interval_sec": 0.15,
        "audio_poll_interval_sec": 0.75,
        "heartbeat_interval_sec": 5.0,
    },
    "streaming": {
        "default_quality": "medium",
        "audio_sample_rate": 16000,
        "audio_chunk_ms": 750,
        "video_device": "/dev/video0",
        "audio_device": "default",
        "quality_profiles": {
            "low": {"width": 320, "height": 240, "jpeg_quality": 0.3, "interval_ms": 500},
            "medium": {"width": 480, "height": 360, "jpeg_quality": 0.4, "interval_ms": 250},
            "high": {"width": 640, "height": 480, "jpeg_quality": 0.6, "interval_ms": 150},
        },
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_active_config_path: Path | None = None

log = logging.getLogger("gamecounter.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("Ignoring unreadable config file %s: %s", path, exc)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("GAMECOUNTER_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/gamecounter/config.yaml"),
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


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "LISTEN_HOST" in os.environ:
        value = os.environ["LISTEN_HOST"].strip()
        if value:
            cfg.setdefault("server", {})["listen_host"] = value
    if "SERVER_URL" in os.environ:
        value = os.environ["SERVER_URL"].strip()
        if value:
            cfg.setdefault("client", {})["server_url"] = value.rstrip("/")
    if "GAMECOUNTER_CACHE" in os.environ:
        value = os.environ["GAMECOUNTER_CACHE"].strip()
        if value:
            cfg.setdefault("client", {})["cache_path"] = value

    env_map = {
        "PORT": ("server", "listen_port", int),
        "LIVENESS_WINDOW_MS": ("server", "liveness_window_ms", int),
        "EVENT_HISTORY_LIMIT": ("server", "event_history_limit", int),
        "FETCH_TIMEOUT_SEC": ("client", "fetch_timeout_sec", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                value = cast(os.environ[env_key])
            except ValueError:
                continue
            if value > 0:
                cfg.setdefault(section, {})[key] = value

    if "POLL_INTERVAL_SEC" in os.environ:
        try:
            interval = float(os.environ["POLL_INTERVAL_SEC"])
        except ValueError:
            interval = 0.0
        if interval > 0:
            client = cfg.setdefault("client", {})
            client["worker_poll_interval_sec"] = interval
            client["owner_poll_interval_sec"] = interval


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (gamecounter/ -> project root)
    this_dir = Path(__file__).resolve().parent
    project_root = this_dir.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)

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
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    get_cfg()
    return _active_config_path


def house_names(cfg: Mapping[str, Any] | None = None) -> Dict[str, str]:
    cfg = cfg if cfg is not None else get_cfg()
    houses = cfg.get("houses", {})
    return {
        house_id: str((entry or {}).get("name") or house_id)
        for house_id, entry in houses.items()
    }


def log_level_name(cfg: Mapping[str, Any] | None = None, default: str = "INFO") -> str:
    cfg = cfg if cfg is not None else get_cfg()
    if cfg.get("logging", {}).get("dev_mode"):
        return "DEBUG"
    return default
