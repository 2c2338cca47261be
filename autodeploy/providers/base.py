"""Contract for the remote source provider."""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from autodeploy.core.models import CommitId, FileEntry


class FetchErrorKind(str, Enum):
    """Provider-side failure categories."""

    NOT_FOUND = "not_found"  # Fatal for this tick
    UNAUTHORIZED = "unauthorized"  # Fatal for this tick
    TRANSIENT = "transient"  # Retried on the next poll tick

    @property
    def retryable(self) -> bool:
        return self is FetchErrorKind.TRANSIENT


class FetchError(Exception):
    """A provider call failed."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        status_code: int | None = None,
        detail: str = "",
    ):
        self.kind = kind
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class SourceProvider(Protocol):
    """Lists files and resolves commits for a named reference.

    Calls are idempotent and side-effect-free.
    """

    async def list_files(self, ref: str) -> list[FileEntry]:
        """Return every blob reachable from ref, with content."""
        ...

    async def resolve_commit(self, ref: str) -> CommitId:
        """Resolve ref to its current commit identifier."""
        ...
