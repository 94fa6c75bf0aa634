from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from tracker.registration import GraphConsumer, TimeAxis
from tracker.store.base import TimeSeriesStore
from tracker.timeline import TimeTracker

logger = structlog.get_logger(__name__)

GraphSeries = Tuple[List[int], List[int]]


class GraphWindowManager:
    """Turns stored samples into per-service (timestamps, values) series for a time window."""

    def __init__(self, store: TimeSeriesStore, time_axis: TimeAxis) -> None:
        self._store = store
        self._time_axis = time_axis

    async def load_graph_points(
        self,
        window_duration: int,
        registrations: Sequence[GraphConsumer],
        now: Optional[int] = None,
    ) -> Dict[str, GraphSeries]:
        end_time = TimeTracker.epoch_millis() if now is None else now
        start_time = end_time - window_duration

        samples = await self._store.query_range(start_time, end_time)

        # Rows keep query order; they are not sorted by timestamp.
        grouped: Dict[str, GraphSeries] = {}
        for sample in samples:
            series = grouped.get(sample.service_id)
            if series is None:
                grouped[sample.service_id] = series = ([], [])
            series[0].append(sample.timestamp)
            series[1].append(sample.metric_value)

        by_address = {registration.address: registration for registration in registrations}
        for service_id, (timestamps, values) in grouped.items():
            registration = by_address.get(service_id)
            if registration is not None:
                registration.load_graph_points(start_time, timestamps, values)

        # Every service is assumed to share one probing cadence, so the first
        # service's timestamps stand in for the global axis.
        if grouped:
            first_timestamps = next(iter(grouped.values()))[0]
            self._time_axis.load_graph_points(start_time, first_timestamps)

        logger.info(
            "Loaded graph points",
            start_time=start_time,
            end_time=end_time,
            samples=len(samples),
            services=len(grouped),
        )
        return grouped
