import asyncio
import time
from typing import Sequence

import structlog

from tracker.metrics import RECORD_REFRESH_DURATION
from tracker.models import RecordData
from tracker.registration import GraphConsumer
from tracker.store.base import TimeSeriesStore
from tracker.timeline import TimeTracker

logger = structlog.get_logger(__name__)


class RecordTracker:
    """Loads the all-time-high value of every tracked service into its display record."""

    def __init__(self, store: TimeSeriesStore) -> None:
        self._store = store
        self.cycle_complete = asyncio.Event()

    async def refresh(self, registrations: Sequence[GraphConsumer]) -> int:
        """Run one refresh cycle and return how many services were processed.

        `cycle_complete` is set once the processed counter reaches the number of
        registrations the cycle started with. A store failure aborts the cycle.
        """
        self.cycle_complete.clear()
        total = len(registrations)
        completed = 0
        started = time.monotonic()

        if total == 0:
            self.cycle_complete.set()
            return 0

        for registration in registrations:
            registration.find_new_graph_peak()
            registration.record_data = await self._load_record(registration.address)

            completed += 1
            if completed == total:
                RECORD_REFRESH_DURATION.observe(time.monotonic() - started)
                logger.info("Record refresh complete", services=completed)
                self.cycle_complete.set()

        return completed

    async def _load_record(self, service_id: str) -> RecordData:
        record = await self._store.get_record(service_id)
        if record is not None:
            return RecordData(metric_value=record.metric_value, timestamp=TimeTracker.to_seconds(record.timestamp))

        legacy = await self._store.get_legacy_record_fallback(service_id)
        if legacy is None:
            logger.debug("No record history", service_id=service_id)
            return RecordData(metric_value=None, timestamp=None)

        await self._store.insert_record(service_id, legacy.metric_value, legacy.timestamp)
        logger.info("Migrated legacy record", service_id=service_id, metric_value=legacy.metric_value)
        return RecordData(metric_value=legacy.metric_value, timestamp=TimeTracker.to_seconds(legacy.timestamp))
