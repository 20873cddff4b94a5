"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reset support
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from projectd.config.merge import merge_configs
from projectd.config.paths import get_config_paths
from projectd.config.schema import (
    Config,
    LoggingConfig,
    PollConfig,
    ProjectConfig,
    RpcConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("projectd.config")

_cached_config: Config | None = None

_KNOWN_SECTIONS = {"logging", "rpc", "poll", "projects"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def _env_number(key: str) -> float | None:
    value = os.environ.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Invalid value for {key}: {value!r} must be a number") from e


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    Environment variables take highest priority.

    Raises:
        ValueError: If a numeric variable cannot be parsed.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("PROJECTD_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    log_level = os.environ.get("PROJECTD_LOG_LEVEL")
    if log_level:
        overrides.setdefault("logging", {})["level"] = log_level

    interval = _env_number("PROJECTD_POLL_INTERVAL_SEC")
    if interval is not None:
        overrides.setdefault("poll", {})["interval_sec"] = interval

    prefix = os.environ.get("PROJECTD_PREFIX")
    if prefix:
        overrides.setdefault("poll", {})["prefix"] = prefix

    work_file = os.environ.get("PROJECTD_WORK_FILE")
    if work_file:
        overrides.setdefault("poll", {})["work_file"] = work_file

    command = os.environ.get("PROJECTD_RPC_COMMAND")
    if command:
        overrides.setdefault("rpc", {})["command"] = command

    return overrides


def _str_dict(data: Any) -> dict[str, str]:
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items() if v is not None}


def _optional_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    log_data = data.get("logging") or {}
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    rpc_data = data.get("rpc") or {}
    defaults = RpcConfig()
    args = rpc_data.get("args", defaults.args)
    stale_after = rpc_data.get("stale_after_sec")
    rpc = RpcConfig(
        command=str(rpc_data.get("command", defaults.command)),
        args=[str(a) for a in args] if isinstance(args, list) else defaults.args,
        env=_str_dict(rpc_data.get("env")),
        timeout=float(rpc_data.get("timeout", defaults.timeout)),
        abort_timeout=float(rpc_data.get("abort_timeout", defaults.abort_timeout)),
        kill_grace=float(rpc_data.get("kill_grace", defaults.kill_grace)),
        restart_cooldown_sec=float(
            rpc_data.get("restart_cooldown_sec", defaults.restart_cooldown_sec)
        ),
        workspace_root=rpc_data.get("workspace_root"),
        project_dir_overrides=_str_dict(rpc_data.get("project_dir_overrides")),
        strict_repo_mapping=bool(rpc_data.get("strict_repo_mapping", False)),
        provider=rpc_data.get("provider"),
        model=rpc_data.get("model"),
        stale_after_sec=_optional_float(stale_after),
    )

    poll_data = data.get("poll") or {}
    poll = PollConfig(
        interval_sec=float(poll_data.get("interval_sec", PollConfig.interval_sec)),
        prefix=str(poll_data.get("prefix", PollConfig.prefix)),
        work_file=poll_data.get("work_file"),
    )

    projects: dict[str, ProjectConfig] = {}
    projects_data = data.get("projects") or {}
    if isinstance(projects_data, dict):
        for key, p in projects_data.items():
            if not isinstance(p, dict):
                _log.warning("Ignoring project settings for %s: expected a mapping", key)
                continue
            projects[str(key)] = ProjectConfig(
                key=str(key),
                enabled=bool(p.get("enabled", True)),
                repo_path=p.get("repo_path"),
                provider=p.get("provider"),
                model=p.get("model"),
                timeout=_optional_float(p.get("timeout")),
                restart_cooldown_sec=_optional_float(p.get("restart_cooldown_sec")),
                strict_repo_mapping=p.get("strict_repo_mapping"),
            )

    extra = {k: v for k, v in data.items() if k not in _KNOWN_SECTIONS}

    return Config(
        logging=logging_config,
        rpc=rpc,
        poll=poll,
        projects=projects,
        extra=extra,
    )


def load_config(config_path: str | Path | None = None, reload: bool = False) -> Config:
    """Load configuration from all sources.

    Merges in order (later wins): system, user, explicit file, environment.

    Args:
        config_path: Optional explicit config file.
        reload: Bypass the cache for the global config.

    Returns:
        Merged Config. Only the global config (no explicit path) is cached.
    """
    global _cached_config

    if config_path is None and _cached_config is not None and not reload:
        return _cached_config

    configs: list[dict[str, Any]] = []

    for path in get_config_paths(config_path):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    if config_path is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config (useful for testing or forcing a reload)."""
    global _cached_config
    _cached_config = None
