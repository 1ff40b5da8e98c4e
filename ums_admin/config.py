#!/usr/bin/env python3
"""
Unified configuration loader for the UMS admin client.

Load order (first found wins):
  1) UMS_ADMIN_CONFIG (env, absolute or relative to CWD)
  2) /etc/ums-admin/config.yaml
  3) ~/.config/ums-admin/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) ./config.yaml (current working directory)

Every file found is merged over the built-in defaults, lower priority first.
Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .defaults import DEFAULT_SETTINGS

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "base_url": "http://localhost:9001",
        "settings_path": "/v1/api/settings/",
        "events_path": "/v1/api/sse/",
        "request_timeout_sec": 10.0,
    },
    "event_stream": {
        "event_name": "message",
        "retry_delay_sec": 1.0,
        "max_retry_delay_sec": 30.0,
        "read_timeout_sec": 90.0,
    },
    "auth": {
        "token": "",
        "token_env": "UMS_ADMIN_TOKEN",
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
    "settings_defaults": {},
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("ums_admin.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        log.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring config file %s: top level is not a mapping", path)
        return {}
    return data


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("UMS_ADMIN_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/ums-admin/config.yaml"),
            Path("~/.config/ums-admin/config.yaml").expanduser(),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
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
    if "UMS_ADMIN_URL" in os.environ:
        value = os.environ["UMS_ADMIN_URL"].strip()
        if value:
            cfg.setdefault("server", {})["base_url"] = value
    if "UMS_ADMIN_TOKEN_ENV" in os.environ:
        value = os.environ["UMS_ADMIN_TOKEN_ENV"].strip()
        if value:
            cfg.setdefault("auth", {})["token_env"] = value


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # <root>/ums_admin -> <root>
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

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
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _as_float(value: Any, default: float, *, minimum: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if parsed != parsed or parsed < minimum:  # NaN or out of range
        return default
    return parsed


def _as_str(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def resolve_client_options(cfg: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten the loaded config into the keyword options the client needs.

    Values that fail to parse fall back to the built-in defaults rather than
    aborting startup.
    """
    server = cfg.get("server") if isinstance(cfg.get("server"), Mapping) else {}
    stream = cfg.get("event_stream") if isinstance(cfg.get("event_stream"), Mapping) else {}
    auth = cfg.get("auth") if isinstance(cfg.get("auth"), Mapping) else {}
    logging_cfg = cfg.get("logging") if isinstance(cfg.get("logging"), Mapping) else {}
    d_server = _DEFAULTS["server"]
    d_stream = _DEFAULTS["event_stream"]

    overrides = cfg.get("settings_defaults")
    if not isinstance(overrides, Mapping):
        overrides = {}

    retry_delay = _as_float(
        stream.get("retry_delay_sec"), d_stream["retry_delay_sec"], minimum=0.01
    )
    max_retry_delay = _as_float(
        stream.get("max_retry_delay_sec"), d_stream["max_retry_delay_sec"], minimum=0.01
    )

    return {
        "base_url": _as_str(server.get("base_url"), d_server["base_url"]).rstrip("/"),
        "settings_path": _as_str(server.get("settings_path"), d_server["settings_path"]),
        "events_path": _as_str(server.get("events_path"), d_server["events_path"]),
        "request_timeout": _as_float(
            server.get("request_timeout_sec"), d_server["request_timeout_sec"], minimum=0.1
        ),
        "event_name": _as_str(stream.get("event_name"), d_stream["event_name"]),
        "retry_delay": retry_delay,
        "max_retry_delay": max(retry_delay, max_retry_delay),
        "read_timeout": _as_float(
            stream.get("read_timeout_sec"), d_stream["read_timeout_sec"], minimum=1.0
        ),
        "token": str(auth.get("token") or ""),
        "token_env": _as_str(auth.get("token_env"), _DEFAULTS["auth"]["token_env"]),
        "dev_mode": bool(logging_cfg.get("dev_mode", False)),
        "log_level": _as_str(logging_cfg.get("level"), "INFO").upper(),
        "settings_defaults": _deep_merge(copy.deepcopy(DEFAULT_SETTINGS), overrides),
    }
