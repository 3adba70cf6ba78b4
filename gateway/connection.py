"""
Connection registry - tracks live WebSocket clients and stamps event sequence numbers.
"""
import itertools
from typing import Any, Dict, List, Optional

from loguru import logger
from starlette.websockets import WebSocket, WebSocketState

from .protocol import EventMessage, GatewayProtocol, ResponseMessage


class Connection:
    """A single client connection."""

    def __init__(self, websocket: Optional[WebSocket], connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.is_authenticated = False
        self.client_id: Optional[str] = None
        self.metadata: Dict[str, Any] = {}

    @property
    def is_open(self) -> bool:
        ws = self.websocket
        if ws is None:
            return False
        return (
            ws.client_state == WebSocketState.CONNECTED
            and ws.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)


class ConnectionManager:
    """Connection registry.

    The event sequence counter is shared by every connection: ``broadcast``
    and ``send_event`` each take a fresh number, so ``seq`` is strictly
    increasing across the whole gateway and never reused.
    """

    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self._seq = itertools.count(1)

    def next_seq(self) -> int:
        return next(self._seq)

    def add(self, connection: Connection) -> Connection:
        self.connections[connection.connection_id] = connection
        logger.info(f"New connection accepted: {connection.connection_id}")
        return connection

    def remove(self, connection_id: str) -> Optional[Connection]:
        connection = self.connections.pop(connection_id, None)
        if connection:
            logger.info(f"Connection disconnected: {connection_id}")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def list(self) -> List[Connection]:
        return list(self.connections.values())

    def count(self) -> int:
        return len(self.connections)

    async def send(self, connection_id: str, frame: Any) -> bool:
        """Unicast a frame. Closed or unknown connections are a silent no-op."""
        connection = self.connections.get(connection_id)
        if not connection or not connection.is_open:
            return False
        data = GatewayProtocol.dump(frame) if hasattr(frame, "model_dump_json") else frame
        try:
            await connection.send_text(data)
        except Exception as e:
            # Socket died between the state check and the write.
            logger.debug(f"Dropped frame for {connection_id}: {e}")
            return False
        return True

    async def broadcast(self, event: str, payload: Optional[Any] = None) -> EventMessage:
        """Fan an event out to every open connection under one fresh seq."""
        frame = GatewayProtocol.create_event(event, payload, self.next_seq())
        for connection_id in list(self.connections):
            await self.send(connection_id, frame)
        return frame

    async def send_response(
        self,
        connection_id: str,
        request_id: str,
        ok: bool,
        payload: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> ResponseMessage:
        response = GatewayProtocol.create_response(request_id, ok, payload, error)
        await self.send(connection_id, response)
        return response

    async def send_event(self, connection_id: str, event: str, payload: Optional[Any] = None) -> EventMessage:
        frame = GatewayProtocol.create_event(event, payload, self.next_seq())
        await self.send(connection_id, frame)
        return frame

