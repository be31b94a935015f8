#!/usr/bin/env python3
"""
Unified configuration loader for vms-backup.

Load order (first found is reported as the active file):
  1) VMS_BACKUP_CONFIG (env, absolute or relative to CWD)
  2) /etc/vms-backup/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Files are merged over the built-in defaults, highest priority last.
Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable

import yaml

from .errors import ConfigError
from .models import Site

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "output_root": "/srv/vms-backup",
        "log_dir": "/var/log/vms-backup",
        "summary_file": "",
        "unassigned_team": "Unassigned",
    },
    "run": {
        "max_runtime_minutes": 0,
        "dry_run": False,
        "metadata_only": False,
        "legacy_detection": True,
    },
    "directory": {
        "timeout_sec": 30.0,
        "recordings_path": "/api/recordings",
        "users_path": "/api/users",
    },
    "transfer": {
        "command": "rsync",
        "options": ["-rt"],
        "remote_user": "",
        "remote_root": "/var/lib/vms/recordings",
        "ssh_identity": "",
        "ssh_options": [],
        "final_extensions": [".mp4"],
        "placeholder_extensions": [".pending"],
    },
    "share": {
        "enabled": False,
        "source": "",
        "mount_point": "",
        "fs_type": "cifs",
        "options": [],
        "mount_command": "mount",
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "transcript": True,
        "keep_transcripts": 30,
    },
    "notifications": {
        "enabled": False,
        "only_on_error": True,
        "webhook": {},
        "email": {},
    },
    "sites": [],
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("vms_backup")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _log.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _log.warning("ignoring config %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("VMS_BACKUP_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/vms-backup/config.yaml"),
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


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "VMS_BACKUP_OUTPUT_ROOT": ("paths", "output_root", str),
        "VMS_BACKUP_LOG_DIR": ("paths", "log_dir", str),
        "VMS_BACKUP_MAX_RUNTIME_MINUTES": ("run", "max_runtime_minutes", float),
        "VMS_BACKUP_DRY_RUN": ("run", "dry_run", _parse_bool),
        "VMS_BACKUP_METADATA_ONLY": ("run", "metadata_only", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
        except ValueError:
            _log.warning("ignoring %s=%r: not a valid value", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # vmsbackup/ -> project root
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
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if _cfg_cache is None:
        get_cfg()
    return list(_search_paths)


def load_sites(cfg: Dict[str, Any], only: Iterable[str] | None = None) -> list[Site]:
    """Build the configured sites, optionally restricted to ``only`` names."""

    entries = cfg.get("sites") or []
    if not isinstance(entries, list):
        raise ConfigError("'sites' must be a list")

    output_root = Path(str(cfg.get("paths", {}).get("output_root") or ".")).expanduser()
    sites: list[Site] = []
    seen: set[str] = set()
    for entry in entries:
        site = Site.from_cfg(entry, output_root)
        if site.name in seen:
            raise ConfigError(f"duplicate site name {site.name!r}")
        seen.add(site.name)
        sites.append(site)

    if only:
        wanted = set(only)
        unknown = wanted - seen
        if unknown:
            raise ConfigError(f"unknown site(s): {', '.join(sorted(unknown))}")
        sites = [site for site in sites if site.name in wanted]
    return sites


def number_setting(cfg: Dict[str, Any], section: str, key: str, default: float) -> float:
    """Read ``cfg[section][key]`` as a non-negative number.

    Missing or empty values give ``default``; anything else that is not a
    number raises :class:`ConfigError`.
    """

    value = (cfg.get(section) or {}).get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}") from exc
    if not number >= 0:
        raise ConfigError(f"{section}.{key} must not be negative, got {value!r}")
    return number
