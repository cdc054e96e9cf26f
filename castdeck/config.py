#!/usr/bin/env python3
"""
Service settings loader for castdeck.

Load order (first found wins):
  1) CASTDECK_CONFIG (env, absolute or relative to CWD)
  2) /etc/castdeck/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.

These are the settings of the control service itself (where the state
documents live, which port to bind, how the streaming processes are named).
The device's streaming configuration is a separate JSON document owned by
``castdeck.stream_config``.
"""
from __future__ import annotations
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "state_dir": ".",
        "setup_file": "setup.json",
        "config_file": "config.json",
        "auth_tokens_file": "auth_tokens.json",
        "static_dir": "public",
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 80,
    },
    "streaming": {
        "runner_command": ["ruby", "runner.rb"],
        "runner_pattern": "runner.rb",
        "encoder_process": "belacoder",
        "helper_processes": ["srtla_send", "srtla_send_upstream"],
        "status_poll_interval": 1.0,
        "liveness_confirmations": 2,
    },
    "network": {
        "poll_interval": 1.0,
        "ignore_interfaces": ["lo"],
    },
    "auth": {
        "bcrypt_rounds": 10,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("castdeck.config")


class ConfigError(Exception):
    """Raised when service settings are unusable."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Continue with other locations/defaults
        log.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    log.warning("Ignoring settings file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CASTDECK_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/castdeck/config.yaml"),
            project_root / "config.yaml",
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

    env_map = {
        "CASTDECK_LISTEN_HOST": ("web_server", "listen_host", str),
        "CASTDECK_LISTEN_PORT": ("web_server", "listen_port", int),
        "CASTDECK_STATE_DIR": ("paths", "state_dir", str),
        "CASTDECK_STATIC_DIR": ("paths", "static_dir", str),
        "CASTDECK_BCRYPT_ROUNDS": ("auth", "bcrypt_rounds", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (castdeck/ -> project root)
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


def merged_with_defaults(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the built-in defaults with ``overrides`` deep-merged on top."""

    return _deep_merge(copy.deepcopy(_DEFAULTS), dict(overrides))


def state_path(cfg: Mapping[str, Any], key: str) -> Path:
    """Resolve a ``paths`` entry, anchoring relative names under ``state_dir``."""

    paths_cfg = cfg.get("paths", {})
    raw = paths_cfg.get(key)
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"paths.{key} must be a non-empty string")
    candidate = Path(raw.strip()).expanduser()
    if candidate.is_absolute():
        return candidate
    state_dir = paths_cfg.get("state_dir") or "."
    return Path(str(state_dir)).expanduser() / candidate


def positive_float(section: Mapping[str, Any], key: str, name: str) -> float:
    try:
        value = float(section.get(key))
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value


def positive_int(section: Mapping[str, Any], key: str, name: str) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer")
    if value <= 0:
        raise ConfigError(f"{name} must be positive")
    return value


def string_list(section: Mapping[str, Any], key: str, name: str) -> list[str]:
    value = section.get(key)
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{name} must be a list of strings")
    cleaned = [str(item).strip() for item in value if str(item).strip()]
    return cleaned
