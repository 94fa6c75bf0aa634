from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import structlog

from tracker.config import Config
from tracker.models import RecordData

logger = structlog.get_logger(__name__)


class GraphConsumer(Protocol):
    """What the graph loader needs from a tracked service."""

    address: str
    record_data: Optional[RecordData]

    def load_graph_points(self, start_time: int, timestamps: Sequence[int], values: Sequence[int]) -> None:
        ...

    def find_new_graph_peak(self) -> Optional[Tuple[int, int]]:
        ...


class TimeAxis(Protocol):
    def load_graph_points(self, start_time: int, timestamps: Sequence[int]) -> None:
        ...


class ServiceRegistration:
    """Server-side state of one tracked service: last result, record and windowed graph."""

    def __init__(self, server_id: int, name: str, address: str, config: Config) -> None:
        self.server_id = server_id
        self.name = name
        self.address = address
        self.record_data: Optional[RecordData] = None
        self.metric_value: Optional[int] = None
        self.error: Optional[str] = None
        self.graph_peak: Optional[Tuple[int, int]] = None
        self._graph_duration = config.graph_duration_ms
        self._graph: List[Tuple[int, Optional[int]]] = []
        self._has_pinged = False

    @property
    def graph_values(self) -> List[Optional[int]]:
        return [value for _, value in self._graph]

    def load_graph_points(self, start_time: int, timestamps: Sequence[int], values: Sequence[int]) -> None:
        self._graph = [(ts, value) for ts, value in zip(timestamps, values) if ts >= start_time]
        self.find_new_graph_peak()
        logger.debug("Loaded graph points", address=self.address, points=len(self._graph))

    def find_new_graph_peak(self) -> Optional[Tuple[int, int]]:
        peak = None
        for ts, value in self._graph:
            if value is not None and (peak is None or value > peak[1]):
                peak = (ts, value)
        self.graph_peak = peak
        return peak

    def handle_ping(self, timestamp: int, metric_value: Optional[int], error: Optional[str] = None,
                    add_graph_point: bool = False) -> Dict[str, Any]:
        """Apply one probe result and return the wire update for it.

        Updates the display record in memory when the value beats it; the caller persists
        that through an explicit record update (see `beats_record`).
        """
        self._has_pinged = True
        self.metric_value = metric_value
        self.error = error
        update: Dict[str, Any] = {}

        if error is not None:
            update["error"] = error
        else:
            update["playerCount"] = metric_value

        if add_graph_point:
            self._graph.append((timestamp, metric_value))
            self._trim_graph(timestamp)
            if metric_value is not None and (self.graph_peak is None or metric_value > self.graph_peak[1]):
                self.graph_peak = (timestamp, metric_value)
                update["graphPeakData"] = self._graph_peak_payload()
            elif self.graph_peak is not None and self.graph_peak[0] < timestamp - self._graph_duration:
                self.find_new_graph_peak()
                update["graphPeakData"] = self._graph_peak_payload()

        if self.beats_record(metric_value):
            self.record_data = RecordData(metric_value=metric_value, timestamp=timestamp // 1000)
            update["recordData"] = self.record_data.model_dump(by_alias=True)

        return update

    def beats_record(self, metric_value: Optional[int]) -> bool:
        if metric_value is None or self.record_data is None:
            return False
        return self.record_data.metric_value is None or metric_value > self.record_data.metric_value

    def init_payload(self) -> Dict[str, Any]:
        """Snapshot sent in `init`; a placeholder when the service has never been probed."""
        payload: Dict[str, Any] = {"address": self.address}
        if self.record_data is not None:
            payload["recordData"] = self.record_data.model_dump(by_alias=True)
        if self.graph_peak is not None:
            payload["graphPeakData"] = self._graph_peak_payload()
        if not self._has_pinged and not self._graph:
            payload["error"] = "Waiting..."
            return payload
        if self.error is not None:
            payload["error"] = self.error
        payload["playerCount"] = self.metric_value
        payload["playerCountHistory"] = self.graph_values
        return payload

    def _graph_peak_payload(self) -> Optional[Dict[str, int]]:
        if self.graph_peak is None:
            return None
        return {"timestamp": self.graph_peak[0], "playerCount": self.graph_peak[1]}

    def _trim_graph(self, now: int) -> None:
        cutoff = now - self._graph_duration
        while self._graph and self._graph[0][0] < cutoff:
            self._graph.pop(0)
