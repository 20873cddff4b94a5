"""Root pytest configuration for all tests."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from projectd.config import reset_config

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"

_ENV_VARS = (
    "PROJECTD_LOG",
    "PROJECTD_LOG_LEVEL",
    "PROJECTD_POLL_INTERVAL_SEC",
    "PROJECTD_PREFIX",
    "PROJECTD_WORK_FILE",
    "PROJECTD_RPC_COMMAND",
)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep the user's config files and PROJECTD_* variables out of tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def worker_command() -> str:
    """Interpreter used to launch the fake worker."""
    return sys.executable


@pytest.fixture
def worker_args() -> list[str]:
    """Base args launching the well-behaved fake worker."""
    return [str(FAKE_WORKER)]


@pytest.fixture
def reset_logging() -> Iterator[None]:
    """Undo setup_logging between tests."""
    import projectd.logging as plog

    yield
    for handler in list(plog.logger.handlers):
        plog.logger.removeHandler(handler)
        handler.close()
    plog.logger.setLevel(logging.NOTSET)
    plog._initialized = False


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
