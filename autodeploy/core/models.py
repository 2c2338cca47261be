"""Data models for the deployment supervisor.

Pydantic models for snapshot and cycle records, a dataclass for the live
managed process (it carries an OS handle that pydantic should not validate).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

# Opaque commit token. Only compared by equality.
CommitId = str


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def short_sha(commit: CommitId | None) -> str:
    """Abbreviate a commit id for log lines."""
    if not commit:
        return "-------"
    return commit[:7]


class ProcessStatus(str, Enum):
    """Lifecycle of a managed process."""

    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


class CyclePhase(str, Enum):
    """Phase of an update cycle."""

    SYNCING = "syncing"
    BUILDING = "building"
    STOPPING = "stopping"
    STARTING = "starting"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CyclePhase.COMPLETE, CyclePhase.FAILED)


# --- Snapshot Models ---


class FileEntry(BaseModel):
    """A single blob of a remote snapshot."""

    path: str
    kind: str = "blob"
    content: bytes = b""


# --- Process Models ---


@dataclass
class ManagedProcess:
    """The one program instance owned by the ProcessSupervisor."""

    pid: int
    group_id: int
    command: list[str]
    status: ProcessStatus = ProcessStatus.STARTING
    exit_code: int | None = None
    started_at: datetime = field(default_factory=utc_now)
    handle: asyncio.subprocess.Process | None = field(default=None, repr=False, compare=False)

    @property
    def is_alive(self) -> bool:
        return self.status in (ProcessStatus.STARTING, ProcessStatus.RUNNING)


# --- Cycle Models ---


class UpdateCycle(BaseModel):
    """One sync/build/restart attempt for a triggering commit. Never persisted."""

    triggering_commit: CommitId
    phase: CyclePhase = CyclePhase.SYNCING
    reason: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None


class CycleResult(BaseModel):
    """Outcome reported by UpdateCycleController.run_cycle."""

    commit: CommitId
    phase: CyclePhase | None = None
    reason: str | None = None
    skipped: bool = False
    entry_point: str | None = None
    pid: int | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.phase == CyclePhase.COMPLETE
