"""Command-line interface for projectd."""

from __future__ import annotations

import argparse
import asyncio
import signal
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from projectd.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from projectd.config.schema import Config

console = Console(stderr=True)
log = get_logger()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="projectd",
        description="Per-project background controller for long-running worker processes",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file merged over the system and user configs",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase verbosity (-v info, -vv verbose, -vvv trace)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    run_parser = subparsers.add_parser("run", help="Run the dispatch loop")
    run_parser.add_argument(
        "--work-file",
        type=Path,
        help="YAML list of work items, re-read every cycle (overrides poll.work_file)",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle, shut sessions down and exit",
    )

    subparsers.add_parser(
        "check-config",
        help="Show the working directory each configured project resolves to",
    )

    return parser


def check_config(config: Config) -> int:
    """Print the resolved working directory per configured project."""
    from projectd.session.resolver import DirectoryResolver, RepoMappingError

    rpc = config.rpc
    resolver = DirectoryResolver(
        workspace_root=rpc.workspace_root,
        overrides=rpc.project_dir_overrides,
        strict=rpc.strict_repo_mapping,
    )

    table = Table(title="projectd projects")
    table.add_column("Project")
    table.add_column("Enabled")
    table.add_column("Working directory")

    failures = 0
    for key, project in sorted(config.projects.items()):
        try:
            cwd = resolver.resolve(
                project_id=key,
                project_name=key,
                repo_path=project.repo_path,
                strict=project.strict_repo_mapping,
            )
            shown = cwd or "[dim](inherit)[/dim]"
        except RepoMappingError as e:
            failures += 1
            shown = f"[red]{e}[/red]"
        table.add_row(key, "yes" if project.enabled else "no", shown)

    console.print(f"command: {rpc.command} {' '.join(rpc.args)}")
    console.print(f"workspace root: {rpc.workspace_root or '(none)'}")
    console.print(table)
    return 1 if failures else 0


async def _run(config: Config, once: bool) -> int:
    from projectd.dispatch import Dispatcher, FileWorkSource
    from projectd.session.supervisor import SessionSupervisor

    if not config.poll.work_file:
        console.print("[red]Error: no work file configured (poll.work_file or --work-file)[/red]")
        return 1

    supervisor = SessionSupervisor.from_config(config)
    dispatcher = Dispatcher(supervisor, FileWorkSource(config.poll.work_file), config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    await dispatcher.run(stop, once=once)
    return 0


def run_cli(args: Sequence[str] | None = None) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    from projectd.config import load_config

    try:
        config = load_config(parsed.config)
    except ValueError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        return 1

    if parsed.verbose is not None:
        config.logging.verbose = min(parsed.verbose + 1, 4)
    setup_logging(config.logging, force_stderr=parsed.command == "run")

    if parsed.command == "check-config":
        return check_config(config)

    if parsed.command == "run":
        if parsed.work_file:
            config.poll.work_file = str(parsed.work_file)
        log.info("Starting projectd (command=%s)", config.rpc.command)
        return asyncio.run(_run(config, once=parsed.once))

    parser.print_help()
    return 1
