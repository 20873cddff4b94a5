"""Structured results returned by SessionSupervisor operations.

Expected per-session failures are reported through these values instead of
exceptions so the dispatch loop can keep iterating.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from projectd.protocol.messages import WorkerState


@dataclass
class EnsureResult:
    """Outcome of ensure_session.

    Attributes:
        session_name: The session that was ensured.
        created: A new worker was started and initialised.
        existed: A live worker was already registered.
        skipped: Creation was not attempted (cooldown, mapping, ownership).
        reason: Human-readable explanation for skipped/failed outcomes.
        error: The exception behind a failed or skipped attempt, if any.
    """

    session_name: str
    created: bool = False
    existed: bool = False
    skipped: bool = False
    reason: str | None = None
    error: Exception | None = None

    def __repr__(self) -> str:
        if self.created:
            return f"<EnsureResult {self.session_name} created>"
        if self.existed:
            return f"<EnsureResult {self.session_name} existed>"
        status = "skipped" if self.skipped else "failed"
        return f"<EnsureResult {self.session_name} {status}: {self.reason}>"


@dataclass
class StateResult:
    """Outcome of get_state."""

    ok: bool
    state: WorkerState | None = None
    reason: str | None = None
    error: Exception | None = None


@dataclass
class IdleResult:
    """Outcome of is_idle.

    ``ok=False`` means idleness is unknown; ``ok=True, idle=False`` means
    the worker is known to be busy.
    """

    ok: bool
    idle: bool = False
    state: WorkerState | None = None
    reason: str | None = None


@dataclass
class PromptResult:
    """Outcome of prompt_if_idle."""

    ok: bool
    prompted: bool = False
    reason: str | None = None
    state: WorkerState | None = None
    error: Exception | None = None


@dataclass
class RestartResult:
    """Outcome of tearing one session down (abort then kill)."""

    session_name: str
    killed: bool
    reason: str | None = None
    abort_error: str | None = None


@dataclass
class ShutdownResult:
    """Per-session outcomes of a bulk shutdown."""

    reason: str
    results: list[RestartResult] = field(default_factory=list)

    @property
    def session_count(self) -> int:
        return len(self.results)

    @property
    def killed_count(self) -> int:
        return sum(1 for r in self.results if r.killed)
