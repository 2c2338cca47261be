"""Build step run against the synchronized workspace.

The build is an arbitrary external command (``npm run build`` by default)
executed with the workspace as working directory. On success the entry
point hint is read from the workspace manifest (package.json "main").
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

from autodeploy.core.process import KillStrategy, get_spawn_flags, select_kill_strategy

logger = logging.getLogger(__name__)

# Entry point declared by the workspace manifest, or None to use the default
EntryPointHint = str | None


class BuildError(Exception):
    """Build command did not succeed.

    The previously running process is left untouched by the caller.
    """

    def __init__(self, exit_code: int, message: str | None = None, timed_out: bool = False):
        self.exit_code = exit_code
        self.timed_out = timed_out
        super().__init__(message or f"Build failed with exit code {exit_code}")


class Builder(Protocol):
    """Contract for the build collaborator."""

    async def build(self, workspace_root: Path) -> EntryPointHint:
        """Build the workspace and return an entry point hint."""
        ...


def read_entry_point(workspace_root: Path, manifest: str = "package.json") -> EntryPointHint:
    """Read the manifest-declared entry point, if any.

    Unreadable or malformed manifests yield None rather than failing the
    build: the caller falls back to the configured default.
    """
    manifest_path = Path(workspace_root) / manifest
    if not manifest_path.is_file():
        return None

    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable manifest {manifest_path}: {e}")
        return None

    if not isinstance(data, dict):
        return None
    main = data.get("main")
    if isinstance(main, str) and main.strip():
        return main.strip()
    return None


class CommandBuilder:
    """Run an external build command in the workspace."""

    def __init__(
        self,
        command: Sequence[str] | str = ("npm", "run", "build"),
        timeout: float = 600,
        env: Mapping[str, str] | None = None,
        manifest: str = "package.json",
        kill_strategy: KillStrategy | None = None,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Build command must not be empty")
        self.timeout = timeout
        self.env = dict(env) if env is not None else None
        self.manifest = manifest
        self.kill_strategy = kill_strategy or select_kill_strategy()

    async def build(self, workspace_root: Path) -> EntryPointHint:
        """Run the build command and return the manifest entry point.

        Raises:
            BuildError: On non-zero exit, timeout, or missing executable
        """
        logger.info(f"Running build: {shlex.join(self.command)} (cwd={workspace_root})")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(workspace_root),
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                **get_spawn_flags(),
            )
        except FileNotFoundError as e:
            raise BuildError(127, f"Build command not found: {self.command[0]}") from e
        except OSError as e:
            raise BuildError(126, f"Build command could not be started: {e}") from e

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=self.timeout)
        except TimeoutError:
            self._kill(process)
            await process.wait()
            raise BuildError(
                -1, f"Build timed out after {self.timeout}s", timed_out=True
            )

        if exit_code != 0:
            raise BuildError(exit_code)

        hint = read_entry_point(workspace_root, self.manifest)
        logger.info(f"Build succeeded (entry point hint: {hint or 'none'})")
        return hint

    def _kill(self, process: asyncio.subprocess.Process) -> None:
        """Kill the build and anything it spawned."""
        try:
            self.kill_strategy.kill_group(self.kill_strategy.group_id_for(process.pid))
        except ProcessLookupError:
            return
        except OSError:
            process.kill()
