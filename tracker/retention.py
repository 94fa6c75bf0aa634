import asyncio
import time
from typing import Optional

import structlog

from tracker.errors import PruneError, StoreError
from tracker.metrics import PRUNE_DURATION, SAMPLES_PRUNED
from tracker.store.base import TimeSeriesStore
from tracker.timeline import TimeTracker

logger = structlog.get_logger(__name__)

DEFAULT_CLEANUP_INTERVAL_MS = 3_600_000


class RetentionPruner:
    """Deletes samples that have aged out of the retention window."""

    def __init__(
        self,
        store: TimeSeriesStore,
        retention_window_ms: int,
        cleanup_interval_ms: int = DEFAULT_CLEANUP_INTERVAL_MS,
    ) -> None:
        self._store = store
        self._retention_window = retention_window_ms
        self._cleanup_interval = cleanup_interval_ms
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def start(self) -> None:
        """Prune once, then schedule the periodic pass when the interval is positive."""
        logger.info("Deleting old samples")
        await self.prune_once()

        if self._cleanup_interval > 0:
            self._task = asyncio.create_task(self._run_periodic(), name="retention-pruner")
            self._task.add_done_callback(self._on_task_done)
        else:
            logger.info("Periodic pruning disabled", cleanup_interval_ms=self._cleanup_interval)

    async def prune_once(self, now: Optional[int] = None) -> int:
        now = TimeTracker.epoch_millis() if now is None else now
        cutoff = now - self._retention_window
        started = time.monotonic()
        try:
            deleted = await self._store.delete_older_than(cutoff)
        except StoreError as e:
            logger.error("Failed to delete old samples", cutoff=cutoff, error=str(e))
            raise PruneError(str(e)) from e

        elapsed = time.monotonic() - started
        PRUNE_DURATION.observe(elapsed)
        SAMPLES_PRUNED.inc(deleted)
        logger.info("Pruned old samples", cutoff=cutoff, deleted=deleted, elapsed_ms=round(elapsed * 1000, 2))
        return deleted

    async def _run_periodic(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval / 1000)
            await self.prune_once()

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Periodic pruning stopped", error=str(error))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
