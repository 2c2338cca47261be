# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the autodeploy test suite.

This module provides fakes for the external collaborators of the update
engine so cycles can be exercised without network, npm or real processes:
- FakeProvider: in-memory SourceProvider keyed by commit
- FakeBuilder: Builder with scripted outcome and optional gate
- FakeSupervisor: ProcessSupervisor look-alike recording every call

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from autodeploy.core.builder import BuildError
from autodeploy.core.controller import UpdateCycleController
from autodeploy.core.models import FileEntry, ManagedProcess, ProcessStatus
from autodeploy.core.process import ProcessSupervisorError, TerminateError
from autodeploy.core.workspace import WorkspaceSynchronizer
from autodeploy.providers.base import FetchError


def make_entries(files: dict[str, str]) -> list[FileEntry]:
    """Build FileEntry objects from a {path: text} mapping."""
    return [FileEntry(path=path, content=text.encode()) for path, text in files.items()]


def snapshot(root: Path) -> dict[str, bytes]:
    """Read every file under root as {relative posix path: bytes}."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


# =============================================================================
# Collaborator Fakes
# =============================================================================


class FakeProvider:
    """In-memory SourceProvider.

    head is what resolve_commit returns; trees maps commit -> entries.
    Setting resolve_error / list_error makes the next calls fail.
    """

    def __init__(self, head: str | None = None, trees: dict[str, list[FileEntry]] | None = None):
        self.head = head
        self.trees = trees or {}
        self.resolve_error: FetchError | None = None
        self.list_error: FetchError | None = None
        self.resolve_calls = 0
        self.listed: list[str] = []

    async def __aenter__(self) -> FakeProvider:
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def resolve_commit(self, ref: str) -> str:
        self.resolve_calls += 1
        if self.resolve_error is not None:
            raise self.resolve_error
        assert self.head is not None
        return self.head

    async def list_files(self, ref: str) -> list[FileEntry]:
        self.listed.append(ref)
        if self.list_error is not None:
            raise self.list_error
        return list(self.trees.get(ref, []))


class FakeBuilder:
    """Builder with a scripted result.

    If gate is set, build() blocks until the gate is released, which lets
    tests hold a cycle open in the building phase.
    """

    def __init__(self, hint: str | None = None, exit_code: int = 0):
        self.hint = hint
        self.exit_code = exit_code
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls: list[Path] = []

    async def build(self, workspace_root: Path) -> str | None:
        self.calls.append(workspace_root)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.exit_code != 0:
            raise BuildError(self.exit_code)
        return self.hint


class FakeSupervisor:
    """Records start/terminate calls in order without spawning anything."""

    def __init__(self) -> None:
        self._current: ManagedProcess | None = None
        self._pids = itertools.count(1000)
        self.events: list[tuple[str, Any]] = []
        self.terminate_error: TerminateError | None = None
        self.start_error: Exception | None = None

    @property
    def current(self) -> ManagedProcess | None:
        return self._current

    def adopt(self, pid: int, group_id: int | None = None) -> ManagedProcess:
        """Pretend a process is already running."""
        process = ManagedProcess(
            pid=pid,
            group_id=group_id if group_id is not None else pid,
            command=["node", "index"],
            status=ProcessStatus.RUNNING,
        )
        self._current = process
        return process

    async def start(
        self, command: Sequence[str], work_dir: Path, env: dict[str, str] | None = None
    ) -> ManagedProcess:
        if self._current is not None and self._current.is_alive:
            raise ProcessSupervisorError("still running")
        if self.start_error is not None:
            raise self.start_error
        pid = next(self._pids)
        self.events.append(("start", list(command)))
        process = ManagedProcess(
            pid=pid, group_id=pid, command=list(command), status=ProcessStatus.RUNNING
        )
        self._current = process
        return process

    async def terminate(self, process: ManagedProcess, timeout: float) -> None:
        self.events.append(("terminate", process.group_id))
        process.status = ProcessStatus.TERMINATING
        if self.terminate_error is not None:
            raise self.terminate_error


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Empty workspace root with a protected directory holding state."""
    root = tmp_path / "repo"
    (root / "_DONT_DELETE").mkdir(parents=True)
    (root / "_DONT_DELETE" / "state.json").write_text('{"keep": true}')
    return root


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider(
        head="abc123",
        trees={
            "abc123": make_entries({"index.js": "console.log('v1')", "package.json": "{}"}),
            "def456": make_entries(
                {"server.js": "console.log('v2')", "package.json": '{"main": "server.js"}'}
            ),
        },
    )


@pytest.fixture
def fake_builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def controller(
    workspace: Path,
    fake_provider: FakeProvider,
    fake_builder: FakeBuilder,
    fake_supervisor: FakeSupervisor,
) -> UpdateCycleController:
    """Controller wired to fakes and a real WorkspaceSynchronizer."""
    return UpdateCycleController(
        provider=fake_provider,
        synchronizer=WorkspaceSynchronizer(),
        builder=fake_builder,
        supervisor=fake_supervisor,  # type: ignore[arg-type]
        workspace_root=workspace,
        run_command=["node"],
        entry_point_default="index",
        protected_paths=["_DONT_DELETE"],
        env={"NODE_ENV": "production"},
        terminate_timeout=1.0,
        unkillable_wait=0.0,
    )


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "posix: marks tests requiring POSIX process groups")
