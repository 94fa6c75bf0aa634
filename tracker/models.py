from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class Sample:
    service_id: str
    timestamp: int
    metric_value: int

    def __post_init__(self) -> None:
        if self.metric_value < 0:
            raise ValueError(f"metric value must be non-negative, got {self.metric_value}")


@dataclass(frozen=True)
class Record:
    service_id: str
    metric_value: int
    timestamp: int


@dataclass(frozen=True)
class ProbeResult:
    """One service's outcome in a probing round."""

    address: str
    metric_value: Optional[int] = None
    error: Optional[str] = None


class RecordData(BaseModel):
    """Display form of a Record; timestamp is in seconds, both fields None when no data exists."""

    metric_value: Optional[int] = Field(default=None, alias="playerCount")
    timestamp: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)
