"""Core modules for the deployment supervisor."""

from autodeploy.core.models import (
    CycleResult,
    CyclePhase,
    FileEntry,
    ManagedProcess,
    ProcessStatus,
    UpdateCycle,
)

__all__ = [
    "CycleResult",
    "CyclePhase",
    "FileEntry",
    "ManagedProcess",
    "ProcessStatus",
    "UpdateCycle",
]
