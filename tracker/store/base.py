from abc import ABC, abstractmethod
from typing import List, Optional

from tracker.models import Record, Sample


class TimeSeriesStore(ABC):
    """Persistence contract for samples and per-service records.

    Samples are append-only. Records are keyed by service id and only change through
    `insert_record`/`update_record`; inserting a sample never touches them.
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Create collections/tables and indexes if missing. Safe to call repeatedly."""

    @abstractmethod
    async def insert_sample(self, service_id: str, timestamp: int, metric_value: int) -> None:
        ...

    @abstractmethod
    async def query_range(self, start_time: int, end_time: int) -> List[Sample]:
        """Samples with start_time <= timestamp <= end_time, in backend order."""

    @abstractmethod
    async def get_record(self, service_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def get_legacy_record_fallback(self, service_id: str) -> Optional[Record]:
        """Highest sample ever stored for the service. Ties resolve in backend order."""

    @abstractmethod
    async def insert_record(self, service_id: str, metric_value: int, timestamp: int) -> None:
        ...

    @abstractmethod
    async def update_record(self, service_id: str, metric_value: int, timestamp: int) -> None:
        ...

    @abstractmethod
    async def delete_older_than(self, cutoff: int) -> int:
        """Delete samples with timestamp < cutoff and return how many were removed."""

    @abstractmethod
    async def close(self) -> None:
        ...
