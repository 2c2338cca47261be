"""Orchestration of one update cycle: sync -> build -> stop old -> start new.

Single-flight: a trigger that arrives while a cycle is active is ignored, not
queued. The poller re-detects the same (or a newer) commit on its next tick,
so nothing is lost and two cycles never interleave writes to the workspace.

Failure leaves last_applied untouched, so the next tick retries the same
commit. The poll interval bounds retry latency; there is no retry timer.
Commits rejected as unsafe are never retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from autodeploy.core.builder import Builder, BuildError
from autodeploy.core.models import (
    CommitId,
    CycleResult,
    CyclePhase,
    UpdateCycle,
    short_sha,
    utc_now,
)
from autodeploy.core.process import ProcessSupervisor, ProcessSupervisorError, TerminateError
from autodeploy.core.workspace import SyncError, SyncErrorKind, WorkspaceSynchronizer
from autodeploy.providers.base import FetchError, SourceProvider

logger = logging.getLogger(__name__)


class UpdateCycleController:
    """Runs update cycles one at a time and remembers the last applied commit."""

    def __init__(
        self,
        provider: SourceProvider,
        synchronizer: WorkspaceSynchronizer,
        builder: Builder,
        supervisor: ProcessSupervisor,
        workspace_root: Path,
        run_command: Sequence[str],
        entry_point_default: str = "index",
        protected_paths: Iterable[str] = (),
        env: Mapping[str, str] | None = None,
        terminate_timeout: float = 10.0,
        unkillable_wait: float = 5.0,
    ):
        self.provider = provider
        self.synchronizer = synchronizer
        self.builder = builder
        self.supervisor = supervisor
        self.workspace_root = Path(workspace_root)
        self.run_command = list(run_command)
        self.entry_point_default = entry_point_default
        self.protected_paths = list(protected_paths)
        self.env = dict(env) if env is not None else None
        self.terminate_timeout = terminate_timeout
        self.unkillable_wait = unkillable_wait

        self.last_applied: CommitId | None = None
        self.rejected_commits: set[CommitId] = set()
        self.active_cycle: UpdateCycle | None = None
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self, commit: CommitId) -> CycleResult:
        """Run one end-to-end cycle for commit, unless one is already active."""
        if self._lock.locked():
            active = self.active_cycle.triggering_commit if self.active_cycle else None
            logger.info(
                f"cycle {short_sha(commit)}: ignored, cycle {short_sha(active)} still in progress"
            )
            return CycleResult(commit=commit, skipped=True, reason="cycle already in progress")

        async with self._lock:
            cycle = UpdateCycle(triggering_commit=commit)
            self.active_cycle = cycle
            started = time.monotonic()
            try:
                result = await self._run_phases(cycle)
            except Exception as e:
                logger.exception(f"cycle {short_sha(commit)}: unexpected error")
                self._fail(cycle, f"unexpected error: {e}")
                result = CycleResult(commit=commit, phase=cycle.phase, reason=cycle.reason)
            finally:
                cycle.finished_at = utc_now()
                self.active_cycle = None

            result.duration_seconds = time.monotonic() - started
            return result

    async def _run_phases(self, cycle: UpdateCycle) -> CycleResult:
        commit = cycle.triggering_commit
        logger.info(f"cycle {short_sha(commit)}: started")

        # 1. Syncing
        self._enter(cycle, CyclePhase.SYNCING)
        try:
            entries = await self.provider.list_files(commit)
            await asyncio.to_thread(
                self.synchronizer.sync, self.workspace_root, self.protected_paths, entries
            )
        except FetchError as e:
            return self._failed_result(cycle, f"fetch {e.kind.value}: {e}")
        except SyncError as e:
            if e.kind == SyncErrorKind.UNSAFE:
                self.rejected_commits.add(commit)
            return self._failed_result(cycle, f"sync {e.kind.value}: {e}")

        # 2. Building
        self._enter(cycle, CyclePhase.BUILDING)
        try:
            hint = await self.builder.build(self.workspace_root)
        except BuildError as e:
            # Old instance keeps serving
            return self._failed_result(cycle, f"build exit code {e.exit_code}: {e}")

        # 3. Stopping
        self._enter(cycle, CyclePhase.STOPPING)
        old = self.supervisor.current
        if old is not None and old.is_alive:
            try:
                await self.supervisor.terminate(old, self.terminate_timeout)
            except TerminateError as e:
                logger.critical(
                    f"cycle {short_sha(commit)}: old process pid={e.pid} group={e.group_id} "
                    f"could not be signalled ({e}); starting replacement after "
                    f"{self.unkillable_wait}s, two instances may run concurrently"
                )
                await asyncio.sleep(self.unkillable_wait)

        # 4. Starting
        self._enter(cycle, CyclePhase.STARTING)
        entry_point = hint or self.entry_point_default
        try:
            process = await self.supervisor.start(
                [*self.run_command, entry_point], self.workspace_root, self.env
            )
        except (OSError, ProcessSupervisorError) as e:
            return self._failed_result(cycle, f"start failed: {e}")

        # 5. Complete
        self._enter(cycle, CyclePhase.COMPLETE)
        self.last_applied = commit
        logger.info(
            f"cycle {short_sha(commit)}: complete, running {entry_point} as pid={process.pid}"
        )
        return CycleResult(
            commit=commit,
            phase=CyclePhase.COMPLETE,
            entry_point=entry_point,
            pid=process.pid,
        )

    def _enter(self, cycle: UpdateCycle, phase: CyclePhase) -> None:
        cycle.phase = phase
        logger.info(f"cycle {short_sha(cycle.triggering_commit)}: {phase.value}")

    def _fail(self, cycle: UpdateCycle, reason: str) -> None:
        failed_in = cycle.phase
        cycle.phase = CyclePhase.FAILED
        cycle.reason = reason
        logger.error(
            f"cycle {short_sha(cycle.triggering_commit)}: failed during {failed_in.value}: {reason}"
        )

    def _failed_result(self, cycle: UpdateCycle, reason: str) -> CycleResult:
        self._fail(cycle, reason)
        return CycleResult(commit=cycle.triggering_commit, phase=CyclePhase.FAILED, reason=reason)
