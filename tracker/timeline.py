import time
from typing import List, Optional, Sequence

from tracker.config import Config


class TimeTracker:
    """Owns the shared time axis that every service's graph is plotted against."""

    def __init__(self, config: Config) -> None:
        self._graph_duration = config.graph_duration_ms
        self._graph_interval = config.graph_interval_ms
        self._points: List[int] = []
        self._last_graph_point: Optional[int] = None

    @staticmethod
    def epoch_millis() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def to_seconds(timestamp: Optional[int]) -> Optional[int]:
        if timestamp is None:
            return None
        return timestamp // 1000

    @property
    def points(self) -> List[int]:
        return list(self._points)

    def load_graph_points(self, start_time: int, timestamps: Sequence[int]) -> None:
        self._points = [ts for ts in timestamps if ts >= start_time]
        if self._points:
            self._last_graph_point = self._points[-1]

    def new_point_timestamp(self, timestamp: Optional[int] = None) -> bool:
        """Append `timestamp` to the axis if a graph interval has elapsed since the last point."""
        if timestamp is None:
            timestamp = self.epoch_millis()
        if self._last_graph_point is not None and timestamp - self._last_graph_point < self._graph_interval:
            return False
        self._points.append(timestamp)
        self._last_graph_point = timestamp
        self._trim(timestamp)
        return True

    def _trim(self, now: int) -> None:
        cutoff = now - self._graph_duration
        while self._points and self._points[0] < cutoff:
            self._points.pop(0)
