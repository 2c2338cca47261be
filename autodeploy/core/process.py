"""Supervision of the single managed program instance.

The managed program is spawned into its own process group/session so the
whole tree it spawns can be signalled as a unit. Platform differences live in
a KillStrategy chosen once at construction:

- PosixGroupKillStrategy: signal the process group, fall back to the pid
- TreeKillStrategy: no POSIX groups, walk descendants with psutil

Termination is requested, not awaited: terminate() returns once the signal
is delivered and a background reaper force-kills the group if it outlives
the grace period. This keeps a slow shutdown from blocking the update cycle.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Coroutine, Mapping, Sequence
from pathlib import Path
from typing import Any

import psutil

from autodeploy.core.models import ManagedProcess, ProcessStatus

logger = logging.getLogger(__name__)


class ProcessSupervisorError(Exception):
    """The supervisor was asked to do something its state does not allow."""

    pass


class TerminateError(Exception):
    """Termination could not be signalled to the process or its group.

    Kind is always "unkillable". The old instance may keep running next to
    its replacement; both identities are carried for the log.
    """

    kind = "unkillable"

    def __init__(self, pid: int, group_id: int, message: str):
        self.pid = pid
        self.group_id = group_id
        super().__init__(message)


def get_spawn_flags() -> dict[str, Any]:
    """Platform-specific kwargs that detach a child into its own group."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


# =============================================================================
# Kill Strategies
# =============================================================================


class KillStrategy(ABC):
    """Platform capability for signalling a process tree.

    Methods raise ProcessLookupError when the target no longer exists and
    another OSError (typically PermissionError) when signalling fails.
    """

    name: str = "base"

    @abstractmethod
    def group_id_for(self, pid: int) -> int:
        """Identify the group a freshly spawned pid leads."""

    @abstractmethod
    def terminate_group(self, group_id: int) -> None:
        """Gracefully stop every process of the group."""

    @abstractmethod
    def terminate_by_pid(self, pid: int) -> None:
        """Gracefully stop a single pid."""

    @abstractmethod
    def kill_group(self, group_id: int) -> None:
        """Forcefully stop every process of the group."""

    @abstractmethod
    def kill_by_pid(self, pid: int) -> None:
        """Forcefully stop a single pid."""


class PosixGroupKillStrategy(KillStrategy):
    """Signal negative process-group ids (os.killpg)."""

    name = "posix-group"

    def group_id_for(self, pid: int) -> int:
        try:
            return os.getpgid(pid)
        except ProcessLookupError:
            # Already gone; with start_new_session the group id equals the pid
            return pid

    def terminate_group(self, group_id: int) -> None:
        os.killpg(group_id, signal.SIGTERM)

    def terminate_by_pid(self, pid: int) -> None:
        os.kill(pid, signal.SIGTERM)

    def kill_group(self, group_id: int) -> None:
        os.killpg(group_id, signal.SIGKILL)

    def kill_by_pid(self, pid: int) -> None:
        os.kill(pid, signal.SIGKILL)


class TreeKillStrategy(KillStrategy):
    """Best-effort tree kill by pid for platforms without process groups."""

    name = "tree"

    def group_id_for(self, pid: int) -> int:
        return pid

    def terminate_group(self, group_id: int) -> None:
        self._signal_tree(group_id, force=False)

    def terminate_by_pid(self, pid: int) -> None:
        self._signal_one(pid, force=False)

    def kill_group(self, group_id: int) -> None:
        self._signal_tree(group_id, force=True)

    def kill_by_pid(self, pid: int) -> None:
        self._signal_one(pid, force=True)

    def _signal_tree(self, pid: int, force: bool) -> None:
        try:
            root = psutil.Process(pid)
            descendants = root.children(recursive=True)
        except psutil.NoSuchProcess as e:
            raise ProcessLookupError(f"No such process: {pid}") from e
        except psutil.AccessDenied as e:
            raise PermissionError(f"Access denied listing children of {pid}") from e

        # Leaves first so nothing gets re-parented mid-walk
        for child in reversed(descendants):
            try:
                child.kill() if force else child.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning(f"Access denied stopping descendant {child.pid} of {pid}")

        self._signal_one(pid, force)

    def _signal_one(self, pid: int, force: bool) -> None:
        try:
            proc = psutil.Process(pid)
            proc.kill() if force else proc.terminate()
        except psutil.NoSuchProcess as e:
            raise ProcessLookupError(f"No such process: {pid}") from e
        except psutil.AccessDenied as e:
            raise PermissionError(f"Access denied stopping {pid}") from e


def select_kill_strategy() -> KillStrategy:
    """Pick the kill strategy for the running platform."""
    if os.name == "posix" and hasattr(os, "killpg"):
        return PosixGroupKillStrategy()
    return TreeKillStrategy()


# =============================================================================
# Process Supervisor
# =============================================================================


class ProcessSupervisor:
    """Owns at most one current ManagedProcess.

    The current pointer is private and only changes through start(); start()
    refuses to run while the current process is still alive, so termination
    of the old instance is always requested before its replacement spawns.
    """

    def __init__(self, kill_strategy: KillStrategy | None = None):
        self.kill_strategy = kill_strategy or select_kill_strategy()
        self._current: ManagedProcess | None = None
        self._background: set[asyncio.Task[None]] = set()

    @property
    def current(self) -> ManagedProcess | None:
        return self._current

    async def start(
        self,
        command: Sequence[str],
        work_dir: Path,
        env: Mapping[str, str] | None = None,
    ) -> ManagedProcess:
        """Spawn the managed program detached into its own group.

        stdout/stderr are inherited so the program's output shows up next to
        the supervisor's own logs.

        Raises:
            ProcessSupervisorError: If the current process is still alive
            OSError: If the executable cannot be spawned
        """
        if self._current is not None and self._current.is_alive:
            raise ProcessSupervisorError(
                f"Process {self._current.pid} is still {self._current.status.value}; "
                "terminate it before starting a replacement"
            )

        handle = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(work_dir),
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            **get_spawn_flags(),
        )

        process = ManagedProcess(
            pid=handle.pid,
            group_id=self.kill_strategy.group_id_for(handle.pid),
            command=list(command),
            handle=handle,
        )
        self._current = process
        # Stays STARTING until the exit watcher is attached
        self._spawn_background(self._watch(process))

        logger.info(
            f"Started process pid={process.pid} group={process.group_id}: {' '.join(command)}"
        )
        return process

    async def terminate(self, process: ManagedProcess, timeout: float) -> None:
        """Request graceful termination of the process and its whole group.

        Returns as soon as the signal is delivered. A background reaper waits
        up to timeout for the exit, then force-kills the group.

        Raises:
            TerminateError: If neither the group nor the pid could be signalled
        """
        if process.status == ProcessStatus.EXITED:
            return

        process.status = ProcessStatus.TERMINATING
        logger.info(f"Terminating process pid={process.pid} group={process.group_id}")
        self._signal(process, force=False)
        self._spawn_background(self._reap(process, timeout))

    async def shutdown(self, timeout: float) -> None:
        """Terminate the current process and wait for background work to settle."""
        process = self._current
        if process is not None and process.is_alive:
            try:
                await self.terminate(process, timeout)
            except TerminateError as e:
                logger.critical(f"Could not terminate pid={e.pid} on shutdown: {e}")

        if self._background:
            _, pending = await asyncio.wait(set(self._background), timeout=timeout + 5)
            for task in pending:
                task.cancel()

    def _signal(self, process: ManagedProcess, force: bool) -> None:
        """Signal the group, falling back to the leader pid."""
        strategy = self.kill_strategy
        group_call = strategy.kill_group if force else strategy.terminate_group
        pid_call = strategy.kill_by_pid if force else strategy.terminate_by_pid

        try:
            group_call(process.group_id)
            return
        except OSError as e:
            logger.debug(
                f"Signalling group {process.group_id} failed ({e}); falling back to pid {process.pid}"
            )

        try:
            pid_call(process.pid)
        except ProcessLookupError:
            logger.info(f"Process pid={process.pid} already gone")
        except OSError as e:
            raise TerminateError(
                process.pid,
                process.group_id,
                f"Unable to signal pid={process.pid} group={process.group_id}: {e}",
            ) from e

    async def _reap(self, process: ManagedProcess, timeout: float) -> None:
        """Force-kill the group if it outlives the grace period."""
        if process.handle is None:
            return
        try:
            await asyncio.wait_for(process.handle.wait(), timeout=timeout)
            return
        except TimeoutError:
            pass

        logger.warning(
            f"Process pid={process.pid} still alive after {timeout}s; killing group {process.group_id}"
        )
        try:
            self._signal(process, force=True)
        except TerminateError as e:
            logger.critical(f"Abandoning unkillable process: {e}")

    async def _watch(self, process: ManagedProcess) -> None:
        """Mark the process RUNNING, then record its exit whenever it happens."""
        if process.handle is None:
            return
        if process.status == ProcessStatus.STARTING:
            process.status = ProcessStatus.RUNNING

        exit_code = await process.handle.wait()
        expected = process.status == ProcessStatus.TERMINATING
        process.status = ProcessStatus.EXITED
        process.exit_code = exit_code

        if expected:
            logger.info(f"Process pid={process.pid} exited with code {exit_code}")
        elif exit_code == 0:
            logger.info(f"Process pid={process.pid} finished cleanly")
        else:
            logger.warning(f"Process pid={process.pid} exited unexpectedly with code {exit_code}")

    def _spawn_background(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
