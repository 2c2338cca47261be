"""Timer-driven detection of remote commit changes.

Each tick runs as its own task, so a slow resolve on one tick never delays
the next tick from being scheduled. The controller's single-flight lock keeps
overlapping ticks from starting a second cycle.
"""

import asyncio
import logging

from autodeploy.core.controller import UpdateCycleController
from autodeploy.core.models import CommitId, CycleResult, short_sha
from autodeploy.providers.base import FetchError, SourceProvider

logger = logging.getLogger(__name__)


class Poller:
    """
    Polls the provider and triggers update cycles on change.

    Design:
    - Never touches the workspace or the process directly
    - Compares against the controller's last applied commit, so a failed
      cycle is retried on the next tick
    - Skips commits the controller rejected as unsafe
    """

    def __init__(
        self,
        provider: SourceProvider,
        controller: UpdateCycleController,
        branch: str,
        interval: float = 60.0,
    ):
        self.provider = provider
        self.controller = controller
        self.branch = branch
        self.interval = interval
        self.last_seen: CommitId | None = None
        self.running = False
        self._stopped = asyncio.Event()
        self._ticks: set[asyncio.Task[CycleResult | None]] = set()

    async def run_once(self) -> CycleResult | None:
        """
        Run a single tick.
        Returns the cycle result, or None when no cycle was triggered.
        """
        try:
            commit = await self.provider.resolve_commit(self.branch)
        except FetchError as e:
            if e.kind.retryable:
                logger.warning(f"Error checking for updates on '{self.branch}': {e}")
            else:
                logger.error(f"Cannot resolve '{self.branch}' ({e.kind.value}): {e}")
            return None

        if commit == self.controller.last_applied:
            logger.debug(f"No update: '{self.branch}' still at {short_sha(commit)}")
            return None
        if commit in self.controller.rejected_commits:
            logger.debug(f"Skipping rejected commit {short_sha(commit)}")
            return None

        logger.info(
            f"Found an update on '{self.branch}': "
            f"{short_sha(self.controller.last_applied)} -> {short_sha(commit)}"
        )
        result = await self.controller.run_cycle(commit)
        if not result.skipped:
            self.last_seen = commit
        return result

    async def run(self) -> None:
        """
        Poll until stop() is called. The first tick runs immediately.
        """
        self.running = True
        self._stopped.clear()
        logger.info(f"Polling '{self.branch}' every {self.interval:g}s")

        try:
            while self.running:
                self._spawn_tick()
                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
                except TimeoutError:
                    pass
        finally:
            self.running = False
            if self._ticks:
                # Cycles are never cancelled mid-way; let in-flight ticks finish
                await asyncio.gather(*self._ticks, return_exceptions=True)

    def stop(self) -> None:
        """Stop the polling loop after in-flight ticks complete."""
        self.running = False
        self._stopped.set()

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self._safe_tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _safe_tick(self) -> CycleResult | None:
        try:
            return await self.run_once()
        except Exception as e:
            logger.error(f"Poller error: {e}")
            return None
