#!/usr/bin/env python3
"""
Configuration loader for wavcache.

Load order (first found wins):
  1) WAVCACHE_CONFIG (env, absolute or relative to CWD)
  2) /etc/wavcache/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .spectrogram import DEFAULT_COMMAND, DEFAULT_OPTIONS, DEFAULT_TIMEOUT_SECONDS

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "data_dir": "/srv/wavcache/data",
        "cache_dir": "/srv/wavcache/cache",
    },
    "spectrogram": {
        "command": DEFAULT_COMMAND,
        "options": list(DEFAULT_OPTIONS),
        "timeout_sec": DEFAULT_TIMEOUT_SECONDS,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 8080,
        "executor_workers": 4,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"configuration file {path} must contain a mapping")
    return data


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("WAVCACHE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/wavcache/config.yaml"),
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
    if "LOG_LEVEL" in os.environ:
        value = os.environ["LOG_LEVEL"].strip()
        if value:
            cfg.setdefault("logging", {})["level"] = value.upper()
    # Paths
    if "WAVCACHE_DATA_DIR" in os.environ:
        cfg.setdefault("paths", {})["data_dir"] = os.environ["WAVCACHE_DATA_DIR"]
    if "WAVCACHE_CACHE_DIR" in os.environ:
        cfg.setdefault("paths", {})["cache_dir"] = os.environ["WAVCACHE_CACHE_DIR"]
    if "SOX_PATH" in os.environ:
        value = os.environ["SOX_PATH"].strip()
        if value:
            cfg.setdefault("spectrogram", {})["command"] = value

    env_map = {
        "SPECTROGRAM_TIMEOUT_SEC": ("spectrogram", "timeout_sec", float),
        "LISTEN_HOST": ("web_server", "listen_host", str),
        "LISTEN_PORT": ("web_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # <root>/wavcache -> <root>
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

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


def _unless_none(value: Any, default: Any) -> Any:
    return default if value is None else value


@dataclass(frozen=True)
class Settings:
    """Resolved settings handed explicitly to the cache, renderer and server."""

    data_dir: Path
    cache_dir: Path
    sox_command: str = DEFAULT_COMMAND
    sox_options: tuple[str, ...] = DEFAULT_OPTIONS
    transform_timeout: float = DEFAULT_TIMEOUT_SECONDS
    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    executor_workers: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "Settings":
        paths = cfg.get("paths") or {}
        spectrogram = cfg.get("spectrogram") or {}
        web_server = cfg.get("web_server") or {}
        logging_cfg = cfg.get("logging") or {}

        options = spectrogram.get("options")
        if isinstance(options, str) or not isinstance(options, (list, tuple)):
            options = list(DEFAULT_OPTIONS)

        log_level = str(logging_cfg.get("level") or "INFO").upper()
        if logging_cfg.get("dev_mode"):
            log_level = "DEBUG"

        return cls(
            data_dir=Path(str(paths.get("data_dir") or ".")).expanduser(),
            cache_dir=Path(str(paths.get("cache_dir") or "cache")).expanduser(),
            sox_command=str(spectrogram.get("command") or DEFAULT_COMMAND),
            sox_options=tuple(str(option) for option in options),
            transform_timeout=float(_unless_none(spectrogram.get("timeout_sec"), DEFAULT_TIMEOUT_SECONDS)),
            listen_host=str(web_server.get("listen_host") or "0.0.0.0"),
            listen_port=int(_unless_none(web_server.get("listen_port"), 8080)),
            executor_workers=max(1, int(web_server.get("executor_workers") or 4)),
            log_level=log_level,
        )
