#!/usr/bin/env python3
"""
Unified configuration loader for the EAS listener archive.

Load order (first found wins for the active path, all found files are merged):
  1) EAS_LISTENER_CONFIG (env, absolute or relative to CWD)
  2) /etc/eas_listener/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "recording_dir": "/app/recordings",
        "shared_state_dir": "/app/state",
        "alert_log_file": "alerts.log",
    },
    "archive": {
        "recording_glob": "EAS_Recording_*.wav",
        "manifest_dirname": ".manifest",
        "max_alerts": 50,
        "chunk_size": 8192,
        "watched_fips": "",
        "old_dirname": "__old__",
    },
    "monitoring": {
        "api_base": "http://127.0.0.1:8080",
        "token": "",
        "watched_only": False,
        "max_logs": 500,
        "inactivity_timeout_sec": 30.0,
        "alert_log_poll_sec": 5.0,
        "reconnect_initial_sec": 2.0,
        "reconnect_factor": 1.8,
        "reconnect_max_sec": 30.0,
        "status_poll_sec": 60.0,
        "audio_poll_sec": 10.0,
        "audio_holdoff_sec": 10.0,
        "probe_backoff_base_sec": 2.0,
        "probe_backoff_max_sec": 60.0,
        "probe_concurrency": 2,
        "probe_state_capacity": 256,
        "playability_timeout_sec": 5.0,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
    "timezone": "UTC",
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError):
        # Ignore parse errors and continue with other locations/defaults
        pass
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("EAS_LISTENER_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/eas_listener/config.yaml"),
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
    # Paths
    if "RECORDING_DIR" in os.environ:
        cfg.setdefault("paths", {})["recording_dir"] = os.environ["RECORDING_DIR"]
    if "SHARED_STATE_DIR" in os.environ:
        cfg.setdefault("paths", {})["shared_state_dir"] = os.environ["SHARED_STATE_DIR"]
    if "DEDICATED_ALERT_LOG_FILE" in os.environ:
        value = os.environ["DEDICATED_ALERT_LOG_FILE"].strip()
        if value:
            cfg.setdefault("paths", {})["alert_log_file"] = value
    if "WATCHED_FIPS" in os.environ:
        cfg.setdefault("archive", {})["watched_fips"] = os.environ["WATCHED_FIPS"]
    if "TZ" in os.environ:
        value = os.environ["TZ"].strip()
        if value:
            cfg["timezone"] = value

    env_map = {
        "MONITORING_MAX_LOGS": ("monitoring", "max_logs", int),
        "API_BASE": ("monitoring", "api_base", str),
        "DASHBOARD_TOKEN": ("monitoring", "token", str),
        "WEB_LISTEN_HOST": ("web_server", "listen_host", str),
        "WEB_LISTEN_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key].strip())
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # <root>/eas_listener -> <root>
    project_root = Path(__file__).resolve().parent.parent

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
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def alert_log_path(cfg: Dict[str, Any] | None = None) -> Path:
    """Location of the dedicated alert log written by the decoder process."""
    cfg = cfg if cfg is not None else get_cfg()
    paths = cfg.get("paths", {})
    return Path(paths.get("shared_state_dir", "")) / str(paths.get("alert_log_file", ""))


def recording_dir(cfg: Dict[str, Any] | None = None) -> Path:
    cfg = cfg if cfg is not None else get_cfg()
    return Path(cfg.get("paths", {}).get("recording_dir", ""))
