from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence

import aiohttp
import structlog

from tracker.errors import ProtocolError
from tracker.protocol import (
    HISTORY_GRAPH_REQUEST,
    HistoryGraphMessage,
    InitMessage,
    PublicConfig,
    ServerPayload,
    ServerUpdate,
    UpdateServersMessage,
    decode,
)
from tracker.reconnect import ReconnectScheduler

logger = structlog.get_logger(__name__)


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SYNCED = "synced"


class ClientRegistration(Protocol):
    def handle_ping(self, update: ServerUpdate, timestamp: int) -> None:
        ...

    def update_server_status(self, update: ServerUpdate, known_versions: Dict[str, str]) -> None:
        ...


class DashboardView(Protocol):
    """Client-side collaborator that renders what the sync channel delivers."""

    public_config: Optional[PublicConfig]

    def set_caption(self, caption: str) -> None: ...

    def set_public_config(self, config: PublicConfig) -> None: ...

    def set_page_ready(self, ready: bool) -> None: ...

    def add_server(self, server_id: int, payload: ServerPayload, timestamp_points: Sequence[int]) -> None: ...

    def get_server_registration(self, server_id: int) -> Optional[ClientRegistration]: ...

    def handle_sync_complete(self) -> None: ...

    def add_graph_point(self, timestamp: int, values: Sequence[Optional[int]]) -> None: ...

    def redraw(self) -> None: ...

    def update_global_stats(self) -> None: ...

    def build_history_graph(self, timestamps: Sequence[int], graph_data: Sequence[Sequence[Optional[int]]]) -> None: ...

    def handle_disconnect(self) -> None: ...


class SyncClient:
    """Client half of the sync channel.

    State moves DISCONNECTED -> CONNECTING -> CONNECTED -> SYNCED and back to
    DISCONNECTED whenever the socket closes. Frames that arrive out of order for the
    current state are dropped.
    """

    def __init__(self, url: str, view: DashboardView, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._url = url
        self._view = view
        self._session = session
        self._websocket: Optional[aiohttp.ClientWebSocketResponse] = None
        self._has_requested_history_graph = False
        self.state = ClientState.DISCONNECTED
        self._closing = False
        self.reconnect = ReconnectScheduler(self.run_once, on_caption=view.set_caption)

    async def run_once(self) -> None:
        """Open one connection and process frames until it closes, then schedule a retry."""
        if self._session is None:
            self._session = aiohttp.ClientSession()

        self.state = ClientState.CONNECTING
        try:
            self._websocket = await self._session.ws_connect(self._url)
        except aiohttp.ClientError as e:
            logger.warning("Sync connection failed", url=self._url, error=str(e))
            self._handle_close()
            return

        self.state = ClientState.CONNECTED
        self.reconnect.reset()
        self._view.set_caption("Connecting...")

        try:
            async for frame in self._websocket:
                if frame.type == aiohttp.WSMsgType.TEXT:
                    await self.handle_frame(frame.data)
                elif frame.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Sync channel error", error=str(self._websocket.exception()))
                    break
        finally:
            self._handle_close()

    async def handle_frame(self, raw: str) -> None:
        try:
            message = decode(raw)
        except ProtocolError as e:
            logger.warning("Dropping undecodable frame", error=str(e))
            return

        if isinstance(message, InitMessage):
            await self._handle_init(message)
        elif self.state is not ClientState.SYNCED:
            logger.warning("Dropping frame received before init", message=message.message, state=self.state.value)
        elif isinstance(message, UpdateServersMessage):
            self._handle_update_servers(message)
        elif isinstance(message, HistoryGraphMessage):
            self._view.build_history_graph(message.timestamps, message.graph_data)

    async def _handle_init(self, message: InitMessage) -> None:
        if self.state is not ClientState.CONNECTED:
            logger.warning("Dropping repeated init", state=self.state.value)
            return

        self._view.set_public_config(message.config)
        self._view.set_page_ready(True)

        if message.config.is_graph_visible:
            await self.send_history_graph_request()

        for server_id, payload in enumerate(message.servers):
            self._view.add_server(server_id, payload, message.timestamp_points)

        self.state = ClientState.SYNCED
        self._view.handle_sync_complete()

    def _handle_update_servers(self, message: UpdateServersMessage) -> None:
        known_versions = self._view.public_config.known_versions if self._view.public_config else {}
        for server_id, update in enumerate(message.updates):
            # updates for services the view has not registered yet are skipped
            registration = self._view.get_server_registration(server_id)
            if registration is not None:
                registration.handle_ping(update, message.timestamp)
                registration.update_server_status(update, known_versions)

        if message.update_history_graph:
            self._view.add_graph_point(message.timestamp, [update.metric_value for update in message.updates])
            self._view.redraw()

        self._view.update_global_stats()

    async def send_history_graph_request(self) -> bool:
        """Ask for the history graph once per connection. Returns whether a request was sent."""
        if self._has_requested_history_graph or self._websocket is None:
            return False
        self._has_requested_history_graph = True
        await self._websocket.send_str(HISTORY_GRAPH_REQUEST)
        return True

    def _handle_close(self) -> None:
        self._websocket = None
        self._has_requested_history_graph = False
        self.state = ClientState.DISCONNECTED
        self._view.handle_disconnect()
        self._view.set_caption("Connection lost!")
        if not self._closing:
            self.reconnect.schedule()

    async def close(self) -> None:
        self._closing = True
        self.reconnect.cancel()
        if self._websocket is not None:
            await self._websocket.close()
        if self._session is not None:
            await self._session.close()


class MirroredServer:
    """Headless stand-in for one dashboard server row."""

    def __init__(self, server_id: int, payload: ServerPayload) -> None:
        self.server_id = server_id
        self.address = payload.address
        self.metric_value = payload.metric_value
        self.error = payload.error
        self.record_data = payload.record_data
        self.graph: List[Optional[int]] = list(payload.metric_value_history or [])
        self.last_timestamp: Optional[int] = None

    def handle_ping(self, update: ServerUpdate, timestamp: int) -> None:
        self.last_timestamp = timestamp
        self.metric_value = update.metric_value
        self.error = update.error

    def update_server_status(self, update: ServerUpdate, known_versions: Dict[str, str]) -> None:
        if update.record_data is not None:
            self.record_data = update.record_data


class DashboardMirror:
    """In-memory DashboardView; keeps the latest synced state without rendering it."""

    def __init__(self) -> None:
        self.public_config: Optional[PublicConfig] = None
        self.caption = ""
        self.page_ready = False
        self.servers: Dict[int, MirroredServer] = {}
        self.timestamps: List[int] = []
        self.redraws = 0
        self.total_metric_value = 0

    def set_caption(self, caption: str) -> None:
        self.caption = caption

    def set_public_config(self, config: PublicConfig) -> None:
        self.public_config = config

    def set_page_ready(self, ready: bool) -> None:
        self.page_ready = ready

    def add_server(self, server_id: int, payload: ServerPayload, timestamp_points: Sequence[int]) -> None:
        self.servers[server_id] = MirroredServer(server_id, payload)
        if payload.metric_value_history is not None:
            self.timestamps = list(timestamp_points)

    def get_server_registration(self, server_id: int) -> Optional[MirroredServer]:
        return self.servers.get(server_id)

    def handle_sync_complete(self) -> None:
        self.update_global_stats()

    def add_graph_point(self, timestamp: int, values: Sequence[Optional[int]]) -> None:
        self.timestamps.append(timestamp)
        for server_id, value in enumerate(values):
            server = self.servers.get(server_id)
            if server is not None:
                server.graph.append(value)

    def redraw(self) -> None:
        self.redraws += 1

    def update_global_stats(self) -> None:
        self.total_metric_value = sum(server.metric_value or 0 for server in self.servers.values())

    def build_history_graph(self, timestamps: Sequence[int], graph_data: Sequence[Sequence[Optional[int]]]) -> None:
        self.timestamps = list(timestamps)
        for server_id, values in enumerate(graph_data):
            server = self.servers.get(server_id)
            if server is not None:
                server.graph = list(values)

    def handle_disconnect(self) -> None:
        self.public_config = None
        self.servers.clear()
        self.timestamps = []
        self.total_metric_value = 0
        self.page_ready = False

