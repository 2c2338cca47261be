"""Shared path helpers for workspace synchronization and configuration."""

import os
import re
from pathlib import Path, PurePosixPath, PureWindowsPath

# "C:/..." is absolute on Windows and never a sensible repository path
DRIVE_ABSOLUTE = re.compile(r"^[A-Za-z]:/")


class UnsafePathError(ValueError):
    """A relative path would resolve outside its root."""


def normalize_relative_path(file_path: str) -> str:
    """Normalize a remote or configured path to canonical posix form.

    ./a.txt, a.txt and a.txt/ all normalize to "a.txt". Backslashes are
    treated as separators so Windows-style input cannot smuggle in "..".

    Raises:
        UnsafePathError: If the path is empty, absolute, contains NUL or a
            ".." segment.
    """
    if not file_path or "\x00" in file_path:
        raise UnsafePathError(f"Invalid path: {file_path!r}")

    unified = file_path.replace("\\", "/")
    if unified.startswith("/") or DRIVE_ABSOLUTE.match(unified):
        raise UnsafePathError(f"Absolute path not allowed: {file_path}")
    # "c:notes.txt" is an ordinary name on POSIX but drive-relative on Windows
    if os.name == "nt" and PureWindowsPath(unified).drive:
        raise UnsafePathError(f"Drive-relative path not allowed: {file_path}")

    parts = [part for part in unified.split("/") if part not in ("", ".")]
    if not parts:
        raise UnsafePathError(f"Empty path: {file_path!r}")
    if ".." in parts:
        raise UnsafePathError(f"Path traversal not allowed: {file_path}")

    return str(PurePosixPath(*parts))


def resolve_under_root(file_path: str, root: Path) -> Path:
    """Join a relative path onto root, failing closed if it escapes root.

    Returns:
        The joined (unresolved) destination path under root.

    Raises:
        UnsafePathError: If the path is malformed or resolves outside root.
    """
    normalized = normalize_relative_path(file_path)
    resolved_root = root.resolve()
    destination = root / normalized

    try:
        destination.resolve().relative_to(resolved_root)
    except ValueError:
        raise UnsafePathError(f"Path '{file_path}' resolves outside '{resolved_root}'")
    return destination


def is_protected(rel_path: str, protected: frozenset[str]) -> bool:
    """True if rel_path is a protected path or lies underneath one."""
    candidate = PurePosixPath(rel_path)
    return any(
        candidate == PurePosixPath(p) or PurePosixPath(p) in candidate.parents
        for p in protected
    )


def contains_protected(rel_path: str, protected: frozenset[str]) -> bool:
    """True if a protected path lies strictly underneath rel_path."""
    candidate = PurePosixPath(rel_path)
    return any(candidate in PurePosixPath(p).parents for p in protected)
