"""Session bookkeeping: live session entries and restart cooldowns."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from projectd.rpc.client import RpcClient


@dataclass
class SessionEntry:
    """A supervised session and the client driving its worker."""

    session_name: str
    client: RpcClient
    started_at: float = field(default_factory=time.time)
    needs_input: bool = False


class SessionRegistry:
    """Map of session name to SessionEntry, owned by one supervisor."""

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}

    def get(self, session_name: str) -> SessionEntry | None:
        return self._entries.get(session_name)

    def add(self, entry: SessionEntry) -> None:
        self._entries[entry.session_name] = entry

    def remove(self, session_name: str) -> SessionEntry | None:
        """Remove and return an entry, or None if it was not registered."""
        return self._entries.pop(session_name, None)

    def names(self) -> list[str]:
        return list(self._entries)

    def entries(self) -> list[SessionEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, session_name: object) -> bool:
        return session_name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))


class CooldownTracker:
    """Last restart-attempt timestamps per session.

    Records are never cleared explicitly; they simply age out. A record
    outlives the session it belongs to, so a worker that keeps dying is
    retried at most once per cooldown window.

    Args:
        default_cooldown: Window length in seconds.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        default_cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_cooldown = default_cooldown
        self._clock = clock
        self._last_attempt: dict[str, float] = {}
        self._cooldowns: dict[str, float] = {}

    def cooldown_for(self, session_name: str) -> float:
        return self._cooldowns.get(session_name, self.default_cooldown)

    def set_cooldown(self, session_name: str, seconds: float | None) -> None:
        """Override the window for one session (None restores the default)."""
        if seconds is None:
            self._cooldowns.pop(session_name, None)
        else:
            self._cooldowns[session_name] = seconds

    def record_restart_attempt(self, session_name: str) -> None:
        """Stamp now, whether or not the attempt goes on to succeed."""
        self._last_attempt[session_name] = self._clock()

    def last_attempt(self, session_name: str) -> float | None:
        return self._last_attempt.get(session_name)

    def is_within_cooldown(self, session_name: str) -> bool:
        ts = self._last_attempt.get(session_name)
        if ts is None:
            return False
        return self._clock() - ts < self.cooldown_for(session_name)

    def remaining(self, session_name: str) -> int:
        """Whole seconds left in the window, rounded up (0 when clear)."""
        ts = self._last_attempt.get(session_name)
        if ts is None:
            return 0
        remaining = self.cooldown_for(session_name) - (self._clock() - ts)
        return max(0, math.ceil(remaining))
