"""Dispatch loop: feed work items to per-project worker sessions.

Each cycle the work source yields ``WorkItem`` tuples. For every enabled
project the loop ensures its session, restarts it when it has gone quiet
while busy, and prompts it only if it is idle. A failed prompt attempt
(timeout, worker exit, error reply) is treated as a health signal and the
session is aborted and restarted under cooldown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import yaml

from projectd.session.supervisor import SessionContext

if TYPE_CHECKING:
    from projectd.config.schema import Config, ProjectConfig
    from projectd.session.supervisor import SessionSupervisor

_log = logging.getLogger("projectd.dispatch")


@dataclass(frozen=True)
class WorkItem:
    """One unit of work for a project."""

    project_id: str
    project_name: str
    prompt: str


class WorkSource(Protocol):
    """Produces the work items for one dispatch cycle."""

    async def fetch(self) -> list[WorkItem]:
        ...


class FileWorkSource:
    """Work items read from a YAML list, re-read every cycle.

    Example work file:
        - project_id: 5a1c-77
          project_name: backend
          prompt: "Work on BE-12: fix the login redirect"
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    async def fetch(self) -> list[WorkItem]:
        if not self.path.exists():
            _log.debug("Work file not found: %s", self.path)
            return []

        text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        data = yaml.safe_load(text) or []
        if not isinstance(data, list):
            raise ValueError(f"Work file {self.path} must contain a list of items")

        items: list[WorkItem] = []
        for i, raw in enumerate(data):
            if not isinstance(raw, dict) or not raw.get("project_id") or not raw.get("prompt"):
                _log.warning("Skipping invalid work item #%d in %s", i, self.path)
                continue
            items.append(
                WorkItem(
                    project_id=str(raw["project_id"]),
                    project_name=str(raw.get("project_name") or raw["project_id"]),
                    prompt=str(raw["prompt"]),
                )
            )
        return items


@dataclass
class CycleMetrics:
    """Counters for one dispatch cycle."""

    item_count: int = 0
    sessions_created: int = 0
    prompted: int = 0
    skipped: int = 0
    restarted: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0


def session_context(item: WorkItem, project: ProjectConfig) -> SessionContext:
    return SessionContext(
        project_id=item.project_id,
        project_name=item.project_name,
        repo_path=project.repo_path,
        provider=project.provider,
        model=project.model,
        timeout=project.timeout,
        restart_cooldown_sec=project.restart_cooldown_sec,
        strict_repo_mapping=project.strict_repo_mapping,
    )


class Dispatcher:
    """Drives a SessionSupervisor from a WorkSource.

    Only one item per project is dispatched per cycle (the first one seen);
    a project's worker handles one prompt at a time.
    """

    def __init__(
        self,
        supervisor: SessionSupervisor,
        source: WorkSource,
        config: Config,
    ) -> None:
        self.supervisor = supervisor
        self.source = source
        self.config = config

    def session_name(self, project_id: str) -> str:
        return f"{self.config.poll.prefix}{project_id}"

    async def run_cycle(self) -> CycleMetrics:
        """Run one dispatch cycle. Never raises for source or worker failures."""
        started = time.perf_counter()
        metrics = CycleMetrics()
        _log.info("Dispatch cycle started")

        try:
            items = await self.source.fetch()
        except Exception as e:
            _log.error("Failed to fetch work items: %s", e)
            metrics.errors.append(f"Failed to fetch work items: {e}")
            items = []

        metrics.item_count = len(items)

        seen: set[str] = set()
        for item in items:
            if item.project_id in seen:
                continue
            seen.add(item.project_id)
            await self._dispatch_item(item, metrics)

        metrics.duration = time.perf_counter() - started
        _log.info(
            "Dispatch cycle completed duration=%.2fs items=%d created=%d prompted=%d "
            "skipped=%d restarted=%d errors=%d",
            metrics.duration, metrics.item_count, metrics.sessions_created,
            metrics.prompted, metrics.skipped, metrics.restarted, len(metrics.errors),
        )
        return metrics

    async def _dispatch_item(self, item: WorkItem, metrics: CycleMetrics) -> None:
        project = self.config.project_settings(item.project_id, item.project_name)
        if not project.enabled:
            _log.debug("Project disabled project=%s", item.project_id)
            metrics.skipped += 1
            return

        name = self.session_name(item.project_id)
        ensure = await self.supervisor.ensure_session(name, session_context(item, project))
        if ensure.skipped:
            _log.debug("Session ensure skipped session=%s reason=%s", name, ensure.reason)
            metrics.skipped += 1
            return
        if not (ensure.created or ensure.existed):
            _log.warning("Session ensure failed session=%s reason=%s", name, ensure.reason)
            metrics.errors.append(f"{name}: {ensure.reason}")
            return
        if ensure.created:
            metrics.sessions_created += 1

        stale_after = self.config.rpc.stale_after_sec
        if stale_after and self.supervisor.is_stale(name, stale_after):
            idle = await self.supervisor.is_idle(name)
            if idle.ok and not idle.idle:
                await self.supervisor.abort_and_restart(
                    name, f"no output for over {stale_after}s while busy"
                )
                metrics.restarted += 1
                return

        result = await self.supervisor.prompt_if_idle(name, item.prompt)
        if not result.ok:
            _log.warning("Prompt attempt failed session=%s reason=%s", name, result.reason)
            await self.supervisor.abort_and_restart(name, result.reason or "prompt failed")
            metrics.restarted += 1
            return

        if result.prompted:
            _log.info("Sent prompt session=%s project=%s", name, item.project_id)
            metrics.prompted += 1
        else:
            _log.debug("Did not prompt session=%s reason=%s", name, result.reason)

    async def run(self, stop: asyncio.Event, once: bool = False) -> None:
        """Run cycles until ``stop`` is set, then shut every session down.

        The first cycle starts immediately. Cycles run back to back in this
        task, so they never overlap: the interval wait starts once a cycle ends.
        """
        interval = self.config.poll.interval_sec
        _log.info("Starting dispatch loop interval=%ss prefix=%s", interval, self.config.poll.prefix)
        try:
            while not stop.is_set():
                await self.run_cycle()
                if once:
                    break
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.supervisor.shutdown("dispatch loop stopped")
