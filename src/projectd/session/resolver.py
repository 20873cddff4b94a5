"""Working-directory resolution for worker processes.

Precedence, highest first:

1. An explicit repository path from the project's settings. ``~`` is
   expanded; relative paths are taken relative to the workspace root.
2. A directory override keyed by project id, then by project name.
   Absolute overrides are used as-is, relative ones are joined to the root.
3. In strict mode nothing else is acceptable: ``RepoMappingError``.
4. Lenient fallback: ``<root>/<project_name>``, then the root itself,
   then None (the worker inherits the controller's cwd).

In strict mode a configured path that does not exist raises; in lenient
mode it is logged and resolution falls through to the next step. The
resolver only inspects the filesystem, it never creates directories.
"""

from __future__ import annotations

import logging
import os

_log = logging.getLogger("projectd.session.resolver")


class RepoMappingError(Exception):
    """A project's working directory could not be resolved in strict mode."""

    pass


def expand_home(path: str) -> str:
    return os.path.expanduser(path)


class DirectoryResolver:
    """Resolve the cwd for a project's worker.

    Args:
        workspace_root: Shared directory containing project checkouts.
        overrides: Project id or name -> directory (absolute or root-relative).
        strict: Require an explicit mapping for every project.
    """

    def __init__(
        self,
        workspace_root: str | None = None,
        overrides: dict[str, str] | None = None,
        strict: bool = False,
    ) -> None:
        self.workspace_root = workspace_root
        self.overrides = dict(overrides or {})
        self.strict = strict

    def root(self) -> str | None:
        """The absolute workspace root, or None when not configured."""
        if not self.workspace_root:
            return None
        return os.path.abspath(expand_home(self.workspace_root))

    def resolve(
        self,
        project_id: str | None = None,
        project_name: str | None = None,
        repo_path: str | None = None,
        strict: bool | None = None,
    ) -> str | None:
        """Resolve a working directory.

        Returns:
            An existing absolute directory, or None to inherit the caller's cwd.

        Raises:
            RepoMappingError: In strict mode, when no existing directory is mapped.
        """
        strict = self.strict if strict is None else strict
        root = self.root()
        label = project_id or project_name or "<unknown>"

        if repo_path:
            expanded = expand_home(repo_path)
            if os.path.isabs(expanded):
                candidate = os.path.abspath(expanded)
            else:
                candidate = os.path.abspath(os.path.join(root or os.getcwd(), expanded))

            if os.path.isdir(candidate):
                return candidate
            if strict:
                raise RepoMappingError(f"Configured repo path does not exist: {candidate}")
            _log.warning(
                "Configured repo path does not exist; falling back project=%s path=%s",
                label, candidate,
            )

        override = None
        if project_id and project_id in self.overrides:
            override = self.overrides[project_id]
        elif project_name and project_name in self.overrides:
            override = self.overrides[project_name]

        if override:
            expanded = expand_home(override)
            if os.path.isabs(expanded):
                candidate = os.path.abspath(expanded)
                kind = "absolute"
            elif root:
                candidate = os.path.abspath(os.path.join(root, expanded))
                kind = "relative"
            else:
                candidate = None
                kind = "relative"

            if candidate and os.path.isdir(candidate):
                return candidate

            shown = candidate or expanded
            if strict:
                if candidate is None:
                    raise RepoMappingError(
                        f"Directory override {shown!r} is relative but no workspace root is configured"
                    )
                raise RepoMappingError(f"Directory override {kind} path does not exist: {shown}")
            _log.warning(
                "Directory override %s path unusable; ignoring project=%s override=%s",
                kind, label, shown,
            )

        if strict:
            raise RepoMappingError(f"Explicit repo mapping required for project {label}")

        if root is None:
            return None
        if not os.path.isdir(root):
            _log.warning("Workspace root does not exist; inheriting cwd root=%s", root)
            return None

        if project_name:
            candidate = os.path.join(root, project_name)
            if os.path.isdir(candidate):
                return candidate
            _log.warning(
                "Repo dir for project not found under workspace root; using root project=%s candidate=%s",
                project_name, candidate,
            )

        return root
