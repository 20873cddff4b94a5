"""Session supervision: registry, cooldowns, directory resolution, facade."""

from projectd.session.registry import CooldownTracker, SessionEntry, SessionRegistry
from projectd.session.resolver import DirectoryResolver, RepoMappingError
from projectd.session.results import (
    EnsureResult,
    IdleResult,
    PromptResult,
    RestartResult,
    ShutdownResult,
    StateResult,
)
from projectd.session.supervisor import SessionContext, SessionSupervisor, is_owned_session

__all__ = [
    "CooldownTracker",
    "SessionEntry",
    "SessionRegistry",
    "DirectoryResolver",
    "RepoMappingError",
    "EnsureResult",
    "IdleResult",
    "PromptResult",
    "RestartResult",
    "ShutdownResult",
    "StateResult",
    "SessionContext",
    "SessionSupervisor",
    "is_owned_session",
]
