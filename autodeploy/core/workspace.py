"""Workspace synchronization against a remote snapshot.

The workspace is fully replaced on every sync: every non-protected entry is
deleted, then every FileEntry of the snapshot is written. No diffing, so
partial trees from a failed earlier cycle never linger.

Ordering:
1. Validate ALL entry paths (nothing touched on failure)
2. Delete stale entries, sparing protected paths
3. Write entries with staged temp files + os.replace
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from collections.abc import Iterable, Sequence
from enum import Enum
from pathlib import Path

from autodeploy.core.models import FileEntry
from autodeploy.core.utils import (
    UnsafePathError,
    contains_protected,
    is_protected,
    normalize_relative_path,
    resolve_under_root,
)

logger = logging.getLogger(__name__)


class SyncErrorKind(str, Enum):
    """Why a sync failed."""

    UNSAFE = "unsafe"  # Path escapes the root; never retried with same input
    IO_ERROR = "io_error"  # Filesystem failure; retried on the next poll tick


class SyncError(Exception):
    """Workspace synchronization failed.

    A failed sync may leave the workspace partially written. Callers must
    treat it as failed and never build from it.
    """

    def __init__(self, kind: SyncErrorKind, message: str, path: str | None = None):
        self.kind = kind
        self.path = path
        super().__init__(message)


def normalize_protected_paths(paths: Iterable[str]) -> frozenset[str]:
    """Canonicalize configured protected paths.

    Raises:
        SyncError: If a protected path is itself unsafe.
    """
    normalized = set()
    for p in paths:
        try:
            normalized.add(normalize_relative_path(p))
        except UnsafePathError as e:
            raise SyncError(SyncErrorKind.UNSAFE, f"Invalid protected path: {e}", p) from e
    return frozenset(normalized)


class WorkspaceSynchronizer:
    """Reconcile a local directory against a remote file listing."""

    def sync(
        self,
        root: Path,
        protected_paths: Iterable[str],
        entries: Sequence[FileEntry],
    ) -> list[str]:
        """Replace the contents of root with entries, keeping protected paths.

        Args:
            root: Workspace root directory (created if missing)
            protected_paths: Relative paths never deleted or overwritten
            entries: Snapshot blobs to materialize

        Returns:
            Relative paths written, in entry order.

        Raises:
            SyncError: UNSAFE on path traversal / symlink tricks, IO_ERROR on
                filesystem failures.
        """
        root = Path(root).absolute()
        protected = normalize_protected_paths(protected_paths)

        # SECURITY: Validate every entry before any deletion
        planned = self._plan_writes(root, entries)

        if root.is_symlink():
            raise SyncError(SyncErrorKind.UNSAFE, f"Workspace root is a symlink: {root}")

        try:
            root.mkdir(parents=True, exist_ok=True)

            # Pass 1: Deletions (must precede writes so no stale file survives)
            removed = self._remove_stale(root, root, protected)

            # Pass 2: Writes
            written = []
            for rel_path, destination, content in planned:
                if is_protected(rel_path, protected):
                    logger.debug(f"Skipping protected path from snapshot: {rel_path}")
                    continue
                self._write_safe(root, destination, content, rel_path)
                written.append(rel_path)
        except OSError as e:
            raise SyncError(SyncErrorKind.IO_ERROR, f"Workspace sync failed: {e}") from e

        logger.info(f"Workspace synced: {len(written)} written, {removed} removed ({root})")
        return written

    def _plan_writes(
        self, root: Path, entries: Sequence[FileEntry]
    ) -> list[tuple[str, Path, bytes]]:
        """Validate entries and compute destinations. Touches nothing."""
        planned: list[tuple[str, Path, bytes]] = []
        seen: set[str] = set()

        for entry in entries:
            try:
                rel_path = normalize_relative_path(entry.path)
                destination = resolve_under_root(rel_path, root)
            except UnsafePathError as e:
                raise SyncError(SyncErrorKind.UNSAFE, str(e), entry.path) from e

            if rel_path in seen:
                raise SyncError(
                    SyncErrorKind.UNSAFE, f"Duplicate path in snapshot: {rel_path}", entry.path
                )
            seen.add(rel_path)
            planned.append((rel_path, destination, entry.content))

        # A path that is both a file and a directory prefix cannot be materialized
        for rel_path in seen:
            for parent in Path(rel_path).parents:
                if str(parent) != "." and parent.as_posix() in seen:
                    raise SyncError(
                        SyncErrorKind.UNSAFE,
                        f"Snapshot uses '{parent.as_posix()}' as both file and directory",
                        rel_path,
                    )

        return planned

    def _remove_stale(self, root: Path, directory: Path, protected: frozenset[str]) -> int:
        """Delete everything under directory that is not protected.

        Directories holding a protected path are descended into rather
        than removed.
        """
        removed = 0
        for child in list(directory.iterdir()):
            rel_path = child.relative_to(root).as_posix()
            if is_protected(rel_path, protected):
                continue
            if contains_protected(rel_path, protected) and child.is_dir() and not child.is_symlink():
                removed += self._remove_stale(root, child, protected)
                continue
            self._remove_safe(child)
            removed += 1
        return removed

    def _remove_safe(self, path: Path) -> None:
        """Remove a file or directory, unlinking symlinks without following.

        IMPORTANT: is_symlink() must be checked BEFORE is_dir() because
        is_dir() follows links and rmtree() refuses them.
        """
        if path.is_symlink():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    def _validate_parent_path(self, root: Path, destination: Path, display_path: str) -> None:
        """Refuse to write through symlinked parent directories."""
        resolved_root = root.resolve()
        current = destination.parent
        while current != root and current != current.parent:
            if current.is_symlink():
                raise SyncError(
                    SyncErrorKind.UNSAFE,
                    f"Parent directory is symlink: {current}",
                    display_path,
                )
            try:
                current.resolve().relative_to(resolved_root)
            except ValueError:
                raise SyncError(
                    SyncErrorKind.UNSAFE,
                    f"Path escapes workspace via parent: {current}",
                    display_path,
                )
            current = current.parent

    def _write_safe(self, root: Path, destination: Path, content: bytes, display_path: str) -> None:
        """Write content via a staged temp file so readers never see half a file."""
        self._validate_parent_path(root, destination, display_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        self._validate_parent_path(root, destination, display_path)

        temp_destination = destination.with_name(
            f".{destination.name}.tmp.{uuid.uuid4().hex[:8]}"
        )
        try:
            temp_destination.write_bytes(content)
            if destination.is_symlink() or destination.is_dir():
                self._remove_safe(destination)
            os.replace(temp_destination, destination)
        except Exception:
            if temp_destination.exists():
                temp_destination.unlink()
            raise
