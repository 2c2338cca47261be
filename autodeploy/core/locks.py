"""File-based instance lock for a workspace using filelock."""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

logger = logging.getLogger(__name__)


class WorkspaceLockedError(Exception):
    """Another supervisor instance already owns the workspace."""

    pass


class WorkspaceLock:
    """Exclusive lock held for the lifetime of a supervisor run.

    The lock file lives in the state directory, never inside the workspace,
    because every sync wipes the workspace.
    """

    LOCK_TIMEOUT: float = 0
    LOCK_FILENAME: str = ".workspace.lock"

    def __init__(self, state_dir: Path, timeout: float | None = None):
        self.state_dir = Path(state_dir)
        self.lock_path = self.state_dir / self.LOCK_FILENAME
        self.timeout = self.LOCK_TIMEOUT if timeout is None else timeout
        self._filelock: FileLock | None = None
        self.acquired = False

    def __enter__(self) -> WorkspaceLock:
        self.state_dir.mkdir(parents=True, exist_ok=True)

        # SECURITY: Refuse to lock through a symlink
        if self.lock_path.is_symlink():
            raise WorkspaceLockedError(f"Lock file is a symlink: {self.lock_path}")

        self._filelock = FileLock(str(self.lock_path), timeout=self.timeout)
        try:
            self._filelock.acquire()
        except FileLockTimeout as e:
            raise WorkspaceLockedError(
                f"Another autodeploy instance holds {self.lock_path}"
            ) from e
        self.acquired = True
        logger.debug(f"Acquired workspace lock {self.lock_path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._filelock is not None and self.acquired:
            with contextlib.suppress(Exception):
                self._filelock.release()
            self.acquired = False
        return False
