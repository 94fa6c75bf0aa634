import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from tracker.metrics import CONNECTED_CLIENTS, MESSAGES_SENT
from tracker.protocol import (
    HISTORY_GRAPH_REQUEST,
    HistoryGraphMessage,
    InitMessage,
    UpdateServersMessage,
    WireModel,
    encode,
)

logger = structlog.get_logger(__name__)


class ConnectionState(str, Enum):
    AWAITING_INIT = "awaiting_init"
    SYNCED = "synced"
    CLOSED = "closed"


@dataclass
class ClientConnection:
    id: str
    websocket: WebSocket
    state: ConnectionState = ConnectionState.AWAITING_INIT
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


InitFactory = Callable[[], InitMessage]
HistoryFactory = Callable[[], Optional[HistoryGraphMessage]]


class SyncServer:
    """Pushes dashboard state to connected clients.

    A connection only joins the broadcast set after its `init` frame has been sent,
    so no client can observe `updateServers` before `init`.
    """

    def __init__(self, init_factory: InitFactory, history_factory: HistoryFactory) -> None:
        self._init_factory = init_factory
        self._history_factory = history_factory
        self._connections: Dict[str, ClientConnection] = {}

    @property
    def connection_count(self) -> int:
        return sum(1 for conn in self._connections.values() if conn.state is ConnectionState.SYNCED)

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one client until it disconnects."""
        await websocket.accept()
        connection = ClientConnection(id=str(uuid.uuid4()), websocket=websocket)
        self._connections[connection.id] = connection

        try:
            await self._send(connection, self._init_factory())
            connection.state = ConnectionState.SYNCED
            CONNECTED_CLIENTS.set(self.connection_count)
            logger.info("Client connected", connection_id=connection.id, clients=self.connection_count)

            while True:
                frame = await websocket.receive_text()
                await self._handle_frame(connection, frame)
        except WebSocketDisconnect as e:
            logger.info("Client disconnected", connection_id=connection.id, code=e.code)
        finally:
            self._drop(connection)

    async def _handle_frame(self, connection: ClientConnection, frame: str) -> None:
        if frame != HISTORY_GRAPH_REQUEST:
            logger.debug("Ignoring unknown client frame", connection_id=connection.id)
            return
        history = self._history_factory()
        if history is None:
            logger.debug("History graph requested while graphs are hidden", connection_id=connection.id)
            return
        await self._send(connection, history)

    async def broadcast(self, message: UpdateServersMessage) -> None:
        synced = [conn for conn in self._connections.values() if conn.state is ConnectionState.SYNCED]
        if not synced:
            return
        payload = encode(message)
        results = await asyncio.gather(
            *(conn.websocket.send_text(payload) for conn in synced),
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(synced, results):
            if isinstance(result, Exception):
                logger.warning("Dropping client after failed send", connection_id=conn.id, error=str(result))
                self._drop(conn)
            else:
                delivered += 1
        MESSAGES_SENT.labels(message=message.message).inc(delivered)

    async def _send(self, connection: ClientConnection, message: WireModel) -> None:
        await connection.websocket.send_text(encode(message))
        MESSAGES_SENT.labels(message=message.message).inc()

    def _drop(self, connection: ClientConnection) -> None:
        connection.state = ConnectionState.CLOSED
        if self._connections.pop(connection.id, None) is not None:
            CONNECTED_CLIENTS.set(self.connection_count)
