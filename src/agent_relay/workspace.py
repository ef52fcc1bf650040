"""Workspace Resolver: confines directory selection to the workspace root.

Every ``/dir`` request and every admin rebind goes through
:meth:`WorkspaceResolver.resolve`. Results are never cached; the
filesystem is consulted on each call so a symlink swapped after an
earlier check cannot widen access.
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class DirectoryRejected(ValueError):
    """A requested directory cannot be used. ``str(exc)`` is user-facing."""


class WorkspaceResolver:
    """Validates requested directories against a fixed workspace root."""

    def __init__(self, workspace_root: str | Path) -> None:
        self._configured_root = Path(workspace_root).expanduser()

    @property
    def configured_root(self) -> Path:
        """The root as configured, whether or not it exists right now."""
        return self._configured_root

    @property
    def root(self) -> Path:
        """Canonical workspace root.

        Raises DirectoryRejected if the root itself cannot be resolved.
        """
        try:
            root = self._configured_root.resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            raise DirectoryRejected(
                f"Workspace root is not available: {self._configured_root}"
            ) from exc
        if not root.is_dir():
            raise DirectoryRejected(
                f"Workspace root is not a directory: {self._configured_root}"
            )
        return root

    def resolve(self, requested: str) -> str:
        """Return the canonical absolute path for *requested*.

        Relative paths are taken relative to the workspace root. ``~`` is
        expanded. ``..`` segments and symlinks are resolved before the
        containment check, which compares path segments rather than string
        prefixes (``/root-evil`` is not inside ``/root``).

        Raises DirectoryRejected when the path does not exist, cannot be
        read, is not a directory, or lies outside the workspace root.
        """
        root = self.root
        requested = requested.strip()
        if not requested:
            raise DirectoryRejected("Directory path is required.")

        candidate = Path(requested).expanduser()
        if not candidate.is_absolute():
            candidate = root / candidate

        try:
            resolved = candidate.resolve(strict=True)
        except (OSError, RuntimeError) as exc:
            logger.info("Rejected directory %r: %s", requested, exc)
            raise DirectoryRejected(
                f"Directory not found: {requested} "
                f"(must stay within workspace root: {root})"
            ) from exc

        if not resolved.is_relative_to(root):
            logger.warning("Rejected directory outside workspace: %r", requested)
            raise DirectoryRejected(
                f"Directory must stay within workspace root: {root}"
            )
        if not resolved.is_dir():
            raise DirectoryRejected(f"Not a directory: {requested}")
        return str(resolved)

    def normalize(self, requested: str) -> str:
        """Canonical spelling of *requested* without requiring it to exist.

        Used to match stored bindings whose directory may have been removed
        since. Symlinks in the existing part of the path are resolved and
        ``..`` segments collapsed; the result must still lie inside the root.
        """
        requested = requested.strip()
        if not requested:
            raise DirectoryRejected("Directory path is required.")
        try:
            root = self._configured_root.resolve()
            candidate = Path(requested).expanduser()
            if not candidate.is_absolute():
                candidate = root / candidate
            normalized = candidate.resolve()
        except (OSError, RuntimeError) as exc:
            raise DirectoryRejected(f"Directory not usable: {requested}") from exc
        if not normalized.is_relative_to(root):
            raise DirectoryRejected(
                f"Directory must stay within workspace root: {root}"
            )
        return str(normalized)

    def default_directory(self) -> str:
        """Directory used for peers with no binding."""
        return str(self.root)
