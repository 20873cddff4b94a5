"""Configuration schema dataclasses for projectd.

Defines the structure of configuration at all levels (system, user,
explicit file). All fields have defaults so partial configs merge cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, takes precedence over level
    file: str | None = None  # Log file path


@dataclass
class RpcConfig:
    """Worker launch and RPC behaviour.

    Example config.yaml:
        rpc:
          command: pi
          args: ["--mode", "rpc"]
          timeout: 120
          restart_cooldown_sec: 300
          workspace_root: ~/dvl
          project_dir_overrides:
            Backend: services/backend
          env:
            LINEAR_API_KEY: "${LINEAR_API_KEY}"
    """

    command: str = "pi"  # Worker executable
    args: list[str] = field(default_factory=lambda: ["--mode", "rpc"])  # Base launch args
    env: dict[str, str] = field(default_factory=dict)  # Env overrides (supports ${VAR})
    timeout: float = 120.0  # Default per-call timeout in seconds
    abort_timeout: float = 10.0  # Ceiling for the abort call
    kill_grace: float = 1.0  # Seconds between SIGTERM and SIGKILL
    restart_cooldown_sec: float = 300.0
    workspace_root: str | None = None  # Shared root containing project clones
    project_dir_overrides: dict[str, str] = field(default_factory=dict)  # id/name -> dir
    strict_repo_mapping: bool = False
    provider: str | None = None  # Default --provider for every session
    model: str | None = None  # Default --model for every session
    stale_after_sec: float | None = None  # Restart busy workers silent this long


@dataclass
class PollConfig:
    """Dispatch loop configuration."""

    interval_sec: float = 300.0
    prefix: str = "pi_project_"  # Session name prefix marking owned sessions
    work_file: str | None = None  # YAML list of work items re-read each cycle


@dataclass
class ProjectConfig:
    """Per-project settings.

    Any field left as None falls back to the matching rpc.* default.
    """

    key: str  # Project id or name the entry is keyed by
    enabled: bool = True
    repo_path: str | None = None
    provider: str | None = None
    model: str | None = None
    timeout: float | None = None
    restart_cooldown_sec: float | None = None
    strict_repo_mapping: bool | None = None


@dataclass
class Config:
    """Root configuration object."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    rpc: RpcConfig = field(default_factory=RpcConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)

    # Unknown top-level sections are kept here
    extra: dict[str, Any] = field(default_factory=dict)

    def project_settings(self, project_id: str, project_name: str | None = None) -> ProjectConfig:
        """Look up settings for a project by id, then by name.

        Returns a default (enabled) ProjectConfig when neither is configured.
        """
        if project_id in self.projects:
            return self.projects[project_id]
        if project_name and project_name in self.projects:
            return self.projects[project_name]
        return ProjectConfig(key=project_id)
