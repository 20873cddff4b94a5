"""Configuration management for projectd.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/projectd/)
- User-level config (~/.config/projectd/ or ~/.projectd/)
- An explicit config file passed on the command line
- Environment variable overrides (highest priority)

Example usage:
    from projectd.config import load_config

    config = load_config("~/projectd.yaml")
    print(config.rpc.command, config.poll.interval_sec)
"""

from projectd.config.loader import (
    get_config,
    load_config,
    reset_config,
)
from projectd.config.paths import get_config_paths
from projectd.config.schema import (
    Config,
    LoggingConfig,
    PollConfig,
    ProjectConfig,
    RpcConfig,
)

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "get_config_paths",
    "LoggingConfig",
    "PollConfig",
    "ProjectConfig",
    "RpcConfig",
]
