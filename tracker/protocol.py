"""Wire messages of the dashboard sync channel.

Server frames are JSON objects discriminated by their `message` field. The only client
frame is the bare text `requestHistoryGraph`, kept unframed so the server never has to
parse client JSON.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from tracker.errors import ProtocolError
from tracker.models import RecordData

HISTORY_GRAPH_REQUEST = "requestHistoryGraph"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ServiceDescriptor(WireModel):
    name: str
    address: str


class PublicConfig(WireModel):
    servers: List[ServiceDescriptor] = Field(default_factory=list)
    graph_duration: int = Field(alias="graphDuration")
    is_graph_visible: bool = Field(alias="isGraphVisible")
    known_versions: Dict[str, str] = Field(default_factory=dict, alias="knownVersions")


class GraphPeak(WireModel):
    timestamp: int
    metric_value: int = Field(alias="playerCount")


class ServerUpdate(WireModel):
    metric_value: Optional[int] = Field(default=None, alias="playerCount")
    error: Optional[str] = None
    record_data: Optional[RecordData] = Field(default=None, alias="recordData")
    graph_peak_data: Optional[GraphPeak] = Field(default=None, alias="graphPeakData")


class ServerPayload(ServerUpdate):
    """Per-service entry of `init`. Without `playerCountHistory` it is a placeholder."""

    address: str
    metric_value_history: Optional[List[Optional[int]]] = Field(default=None, alias="playerCountHistory")


class InitMessage(WireModel):
    message: Literal["init"] = "init"
    config: PublicConfig
    servers: List[ServerPayload]
    timestamp_points: List[int] = Field(default_factory=list, alias="timestampPoints")


class UpdateServersMessage(WireModel):
    message: Literal["updateServers"] = "updateServers"
    timestamp: int
    updates: List[ServerUpdate]
    update_history_graph: bool = Field(default=False, alias="updateHistoryGraph")


class HistoryGraphMessage(WireModel):
    message: Literal["historyGraph"] = "historyGraph"
    timestamps: List[int]
    graph_data: List[List[Optional[int]]] = Field(alias="graphData")


ServerMessage = Annotated[
    Union[InitMessage, UpdateServersMessage, HistoryGraphMessage],
    Field(discriminator="message"),
]

_server_message_adapter: TypeAdapter[Any] = TypeAdapter(ServerMessage)


def encode(message: WireModel) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)


def decode(raw: Union[str, bytes]) -> Union[InitMessage, UpdateServersMessage, HistoryGraphMessage]:
    try:
        return _server_message_adapter.validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed server message: {e.error_count()} error(s)") from e
