"""Session supervisor: one long-lived worker per project session.

Lifecycle per session::

    absent -> starting -> ready -> (busy <-> idle) -> aborting -> absent

The supervisor owns the session registry and the restart cooldowns. It is
driven by a single cooperative caller (the dispatch loop) which never
issues two ensure/prompt calls for the same session concurrently, so the
registry needs no lock. Expected per-session failures come back as result
values; nothing here raises for a worker misbehaving.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from projectd.protocol.messages import WorkerState
from projectd.rpc.client import (
    ABORT_TIMEOUT_CEILING,
    DEFAULT_KILL_GRACE,
    DEFAULT_TIMEOUT,
    EVENT,
    EXTENSION_UI_REQUEST,
    RpcClient,
)
from projectd.rpc.errors import RpcError
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

if TYPE_CHECKING:
    from projectd.config.schema import Config

_log = logging.getLogger("projectd.supervisor")

DEFAULT_PREFIX = "pi_project_"
NOT_OWNED = "Session not owned by this service"
NOT_RUNNING = "not running"
NOT_IDLE = "not idle"

_OWNED_SUFFIX = re.compile(r"[A-Za-z0-9-]+")


@dataclass
class SessionContext:
    """Per-session inputs to ensure_session.

    Any field left as None falls back to the supervisor's defaults.
    """

    project_id: str | None = None
    project_name: str | None = None
    repo_path: str | None = None
    provider: str | None = None
    model: str | None = None
    timeout: float | None = None
    restart_cooldown_sec: float | None = None
    strict_repo_mapping: bool | None = None
    parent_session: str | None = None


def is_owned_session(session_name: str, prefix: str) -> bool:
    """True iff the name is ``prefix`` followed by a non-empty ``[A-Za-z0-9-]+``."""
    if not session_name.startswith(prefix):
        return False
    return _OWNED_SUFFIX.fullmatch(session_name[len(prefix):]) is not None


class SessionSupervisor:
    """Ensures, probes, prompts and restarts worker sessions.

    Example:
        ```python
        supervisor = SessionSupervisor.from_config(config)
        ensure = await supervisor.ensure_session("pi_project_abc", SessionContext(project_name="abc"))
        if ensure.created or ensure.existed:
            result = await supervisor.prompt_if_idle("pi_project_abc", "Work on ABC-12")
            if not result.ok:
                await supervisor.abort_and_restart("pi_project_abc", result.reason or "prompt failed")
        await supervisor.shutdown()
        ```
    """

    def __init__(
        self,
        prefix: str = DEFAULT_PREFIX,
        command: str = "pi",
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        abort_timeout: float = ABORT_TIMEOUT_CEILING,
        kill_grace: float = DEFAULT_KILL_GRACE,
        restart_cooldown_sec: float = 300.0,
        provider: str | None = None,
        model: str | None = None,
        resolver: DirectoryResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.prefix = prefix
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.timeout = timeout
        self.abort_timeout = abort_timeout
        self.kill_grace = kill_grace
        self.provider = provider
        self.model = model
        self.resolver = resolver or DirectoryResolver()

        self._registry = SessionRegistry()
        self._cooldowns = CooldownTracker(restart_cooldown_sec, clock=clock)

    @classmethod
    def from_config(cls, config: Config) -> SessionSupervisor:
        rpc = config.rpc
        return cls(
            prefix=config.poll.prefix,
            command=rpc.command,
            args=rpc.args,
            env=rpc.env,
            timeout=rpc.timeout,
            abort_timeout=rpc.abort_timeout,
            kill_grace=rpc.kill_grace,
            restart_cooldown_sec=rpc.restart_cooldown_sec,
            provider=rpc.provider,
            model=rpc.model,
            resolver=DirectoryResolver(
                workspace_root=rpc.workspace_root,
                overrides=rpc.project_dir_overrides,
                strict=rpc.strict_repo_mapping,
            ),
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def cooldowns(self) -> CooldownTracker:
        return self._cooldowns

    # -- queries -----------------------------------------------------------

    def is_owned_session(self, session_name: str) -> bool:
        return is_owned_session(session_name, self.prefix)

    def list_sessions(self) -> list[str]:
        return self._registry.names()

    def get_client(self, session_name: str) -> RpcClient | None:
        entry = self._registry.get(session_name)
        return entry.client if entry else None

    def _live_client(self, session_name: str) -> RpcClient | None:
        client = self.get_client(session_name)
        if client is None or not client.is_alive():
            return None
        return client

    def needs_input(self, session_name: str) -> bool:
        """True if the worker asked for external input since its last prompt."""
        entry = self._registry.get(session_name)
        return bool(entry and entry.needs_input)

    def is_stale(self, session_name: str, max_silence: float) -> bool:
        """True if a live worker has sent no event for over ``max_silence`` seconds."""
        client = self._live_client(session_name)
        return client is not None and client.last_event_age() > max_silence

    def build_args(self, context: SessionContext) -> list[str]:
        """Base launch args plus the session's provider/model flags."""
        args = list(self.args)
        provider = context.provider or self.provider
        model = context.model or self.model
        if provider:
            args += ["--provider", provider]
        if model:
            args += ["--model", model]
        return args

    # -- lifecycle ---------------------------------------------------------

    async def ensure_session(
        self, session_name: str, context: SessionContext | None = None
    ) -> EnsureResult:
        """Make sure a live, initialised worker exists for the session."""
        context = context or SessionContext()

        if not self.is_owned_session(session_name):
            _log.warning("Refusing to ensure unowned session %s", session_name)
            return EnsureResult(session_name, skipped=True, reason=NOT_OWNED)

        existing = self._registry.get(session_name)
        if existing is not None and existing.client.is_alive():
            return EnsureResult(session_name, existed=True)

        self._cooldowns.set_cooldown(session_name, context.restart_cooldown_sec)
        if self._cooldowns.is_within_cooldown(session_name):
            remaining = self._cooldowns.remaining(session_name)
            _log.warning(
                "Session creation skipped (cooldown) session=%s remaining=%ss",
                session_name, remaining,
            )
            return EnsureResult(
                session_name, skipped=True, reason=f"cooldown {remaining}s remaining"
            )

        if existing is not None:
            # Worker died since the last cycle; the recreation counts as a restart
            _log.warning(
                "Worker for session exited; recreating session=%s returncode=%s",
                session_name, existing.client.returncode,
            )
            self._registry.remove(session_name)
            self._cooldowns.record_restart_attempt(session_name)

        try:
            cwd = self.resolver.resolve(
                project_id=context.project_id,
                project_name=context.project_name,
                repo_path=context.repo_path,
                strict=context.strict_repo_mapping,
            )
        except RepoMappingError as e:
            self._cooldowns.record_restart_attempt(session_name)
            _log.warning(
                "Session creation skipped due to repo mapping error session=%s project=%s: %s",
                session_name, context.project_id or context.project_name, e,
            )
            return EnsureResult(session_name, skipped=True, reason=str(e), error=e)

        args = self.build_args(context)
        _log.info(
            "Creating session=%s command=%s args=%s cwd=%s",
            session_name, self.command, args, cwd,
        )

        client = RpcClient(
            session_name,
            command=self.command,
            args=args,
            cwd=cwd,
            env=self.env,
            timeout=self.timeout if context.timeout is None else context.timeout,
            abort_timeout=self.abort_timeout,
            kill_grace=self.kill_grace,
        )
        entry = SessionEntry(session_name=session_name, client=client)
        client.on(EXTENSION_UI_REQUEST, lambda _msg: self._mark_needs_input(entry))
        client.on(EVENT, lambda evt: _log.debug("worker event session=%s type=%s", session_name, evt.type))

        await client.spawn()

        try:
            resp = await client.new_session(context.parent_session)
            if not resp.success:
                raise RpcError(resp.error or "new_session failed")
        except RpcError as e:
            _log.error("Failed to initialise session=%s: %s", session_name, e)
            self._cooldowns.record_restart_attempt(session_name)
            await client.kill()
            return EnsureResult(session_name, reason=str(e), error=e)

        self._registry.add(entry)
        _log.info("Session ready session=%s pid=%s", session_name, client.pid)
        return EnsureResult(session_name, created=True)

    def _mark_needs_input(self, entry: SessionEntry) -> None:
        if not entry.needs_input:
            _log.info("Session is waiting for input session=%s", entry.session_name)
        entry.needs_input = True

    async def get_state(self, session_name: str) -> StateResult:
        client = self._live_client(session_name)
        if client is None:
            return StateResult(ok=False, reason=NOT_RUNNING)

        try:
            resp = await client.get_state()
        except RpcError as e:
            return StateResult(ok=False, reason=str(e), error=e)

        if not resp.success:
            return StateResult(ok=False, reason=resp.error or "get_state failed")

        return StateResult(ok=True, state=WorkerState.model_validate(resp.data or {}))

    async def is_idle(self, session_name: str) -> IdleResult:
        result = await self.get_state(session_name)
        if not result.ok or result.state is None:
            return IdleResult(ok=False, reason=result.reason)
        return IdleResult(ok=True, idle=result.state.idle, state=result.state)

    async def prompt_if_idle(self, session_name: str, message: str) -> PromptResult:
        """Send ``message`` only if the worker reports itself idle. Never queues."""
        client = self._live_client(session_name)
        if client is None:
            return PromptResult(ok=False, reason=NOT_RUNNING)

        idle = await self.is_idle(session_name)
        if not idle.ok:
            return PromptResult(ok=False, reason=idle.reason)
        if not idle.idle:
            return PromptResult(ok=True, prompted=False, reason=NOT_IDLE, state=idle.state)

        try:
            resp = await client.prompt(message)
        except RpcError as e:
            return PromptResult(ok=False, reason=str(e), error=e)

        if not resp.success:
            return PromptResult(ok=False, reason=resp.error or "prompt failed")

        entry = self._registry.get(session_name)
        if entry is not None:
            entry.needs_input = False
        return PromptResult(ok=True, prompted=True)

    async def abort_and_restart(self, session_name: str, reason: str) -> RestartResult:
        """Abort and kill the worker; the next ensure recreates it after cooldown.

        The cooldown is stamped before anything else so that a failing abort
        still gates the next attempt.
        """
        if not self.is_owned_session(session_name):
            _log.warning("Refusing to restart unowned session %s", session_name)
            return RestartResult(session_name, killed=False, reason=NOT_OWNED)

        _log.warning("Aborting and restarting session=%s reason=%s", session_name, reason)
        self._cooldowns.record_restart_attempt(session_name)

        entry = self._registry.get(session_name)
        if entry is None:
            return RestartResult(session_name, killed=False, reason=reason)

        try:
            return await self._teardown(entry, reason)
        finally:
            if self._registry.get(session_name) is entry:
                self._registry.remove(session_name)

    async def shutdown(self, reason: str = "shutdown") -> ShutdownResult:
        """Abort and kill every live session, continuing past failures."""
        entries = self._registry.entries()
        _log.info("Shutting down sessions reason=%s count=%d", reason, len(entries))

        result = ShutdownResult(reason=reason)
        for entry in entries:
            try:
                result.results.append(await self._teardown(entry, reason))
            except Exception as e:
                _log.error("Shutdown of session=%s failed: %s", entry.session_name, e)
                result.results.append(
                    RestartResult(entry.session_name, killed=False, reason=str(e))
                )
            self._registry.remove(entry.session_name)

        self._registry.clear()
        _log.info(
            "Session shutdown complete reason=%s count=%d killed=%d",
            reason, result.session_count, result.killed_count,
        )
        return result

    async def _teardown(self, entry: SessionEntry, reason: str) -> RestartResult:
        client = entry.client
        abort_error = None

        if client.is_alive():
            try:
                resp = await client.abort()
                if not resp.success:
                    abort_error = resp.error or "abort failed"
            except RpcError as e:
                abort_error = str(e)
            if abort_error:
                _log.debug("Abort failed session=%s: %s", entry.session_name, abort_error)

        await client.kill()
        return RestartResult(
            entry.session_name, killed=True, reason=reason, abort_error=abort_error
        )
