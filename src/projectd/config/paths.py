"""Configuration path resolution.

Handles config file locations for:
- System: /etc/projectd/config.yaml
- User: $XDG_CONFIG_HOME/projectd/, ~/.config/projectd/ or ~/.projectd/
- Explicit: a path passed on the command line
"""

from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
APP_NAME = "projectd"
SHORT_NAME = ".projectd"


def get_system_config_path() -> Path:
    """Get system-level config path (the file may not exist)."""
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_path() -> Path:
    """Get user-level config path (the file may not exist).

    Tries XDG_CONFIG_HOME first, then ~/.config if it exists, then ~/.projectd.
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_NAME / CONFIG_FILENAME

    home = Path.home()
    xdg_default = home / ".config"
    if xdg_default.exists():
        return xdg_default / APP_NAME / CONFIG_FILENAME

    return home / SHORT_NAME / CONFIG_FILENAME


def get_config_paths(config_path: str | Path | None = None) -> list[Path]:
    """Get all config paths in priority order (lowest to highest).

    Args:
        config_path: Optional explicit config file, merged last.

    Returns:
        List of config paths: system, user, explicit.
    """
    paths = [get_system_config_path(), get_user_config_path()]
    if config_path:
        paths.append(Path(config_path).expanduser())
    return paths
