"""
Gateway server - protocol state machine and method router.

The server owns the connection registry, the session store and the agent
runner handed to it; nothing here is a module-level singleton.
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type, Union

from loguru import logger
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocket

from .agent_runner import AgentRunner
from .connection import Connection, ConnectionManager
from .models import new_id
from .protocol import (
    PROTOCOL_VERSION,
    SERVER_VERSION,
    AgentEventType,
    AgentRunParams,
    AgentStreamEvent,
    ConnectParams,
    EventType,
    FrameError,
    GatewayProtocol,
    PairingApproveParams,
    RequestMessage,
    RequestType,
    ResponseMessage,
    SendParams,
    SessionHistoryParams,
    SessionParams,
    StopReason,
)
from .session_store import SessionStore

FollowUp = Callable[[], Awaitable[None]]
HandlerResult = Union[ResponseMessage, Tuple[ResponseMessage, FollowUp]]
Handler = Callable[[Connection, RequestMessage, Optional[BaseModel]], Awaitable[HandlerResult]]

UNPARSED_REQUEST_ID = "?"


class GatewayServer:
    """Gateway server.

    Every request gets exactly one response. A handler may hand back a
    follow-up coroutine factory alongside its response; it runs only after
    the response has been written, which keeps ``presence`` and agent events
    behind the acknowledgement they belong to.
    """

    def __init__(
        self,
        sessions: SessionStore,
        agent_runner: AgentRunner,
        connection_manager: Optional[ConnectionManager] = None,
        token: Optional[str] = None,
    ):
        self.sessions = sessions
        self.agent_runner = agent_runner
        self.connection_manager = connection_manager or ConnectionManager()
        self.token = token or None

        self._handlers: Dict[str, Handler] = {}
        self._params_models: Dict[str, Type[BaseModel]] = {}
        self._register_default_handlers()

        self._runs: Set[asyncio.Task] = set()

        self.started_at: Optional[datetime] = None
        self._started_monotonic = time.monotonic()
        self.is_running = False

    def _register_default_handlers(self):
        """Register default request handlers."""
        self.register_handler(RequestType.CONNECT, self._handle_connect, ConnectParams)
        self.register_handler(RequestType.HEALTH, self._handle_health)
        self.register_handler(RequestType.AGENT, self._handle_agent, AgentRunParams)
        self.register_handler(RequestType.SEND, self._handle_send, SendParams)

        self.register_handler(RequestType.SESSIONS_LIST, self._handle_sessions_list)
        self.register_handler(RequestType.SESSIONS_GET, self._handle_sessions_get, SessionParams)
        self.register_handler(RequestType.SESSIONS_HISTORY, self._handle_sessions_history, SessionHistoryParams)
        self.register_handler(RequestType.SESSIONS_RESET, self._handle_sessions_reset, SessionParams)
        self.register_handler(RequestType.SESSIONS_DELETE, self._handle_sessions_delete, SessionParams)

        self.register_handler(RequestType.PAIRING_LIST, self._handle_pairing_list)
        self.register_handler(RequestType.PAIRING_APPROVE, self._handle_pairing_approve, PairingApproveParams)

    def register_handler(
        self,
        method: Union[RequestType, str],
        handler: Handler,
        params_model: Optional[Type[BaseModel]] = None,
    ):
        """Register a request handler and, optionally, its params schema."""
        key = method.value if isinstance(method, RequestType) else method
        self._handlers[key] = handler
        if params_model is not None:
            self._params_models[key] = params_model
        logger.debug(f"Registered handler for: {key}")

    def _validate_request_params(self, method: str, params: Any) -> Optional[BaseModel]:
        model = self._params_models.get(method)
        if not model:
            return None
        # null params validate as an empty object
        return model.model_validate({} if params is None else params)

    # ============ Lifecycle ============

    async def start(self):
        self.started_at = datetime.now()
        self._started_monotonic = time.monotonic()
        self.is_running = True
        logger.info("Gateway Server started")

    async def stop(self):
        self.is_running = False
        await self.drain()
        logger.info("Gateway Server stopped")

    async def drain(self):
        """Wait for every in-flight agent run to finish."""
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    @property
    def uptime(self) -> float:
        return time.monotonic() - self._started_monotonic

    # ============ Transport entry points ============

    async def open_connection(self, websocket: Optional[WebSocket]) -> Connection:
        connection = Connection(websocket, f"conn_{new_id()}")
        return self.connection_manager.add(connection)

    async def close_connection(self, connection_id: str) -> None:
        if self.connection_manager.remove(connection_id):
            await self._broadcast_presence()

    async def handle_message(self, connection_id: str, raw: Union[str, bytes]) -> None:
        """Feed one inbound frame from a connection through the router."""
        connection = self.connection_manager.get(connection_id)
        if not connection:
            return

        try:
            message = GatewayProtocol.parse_message(raw)
        except FrameError as e:
            logger.warning(f"Bad frame from {connection_id}: {e}")
            await self.connection_manager.send_response(connection_id, UNPARSED_REQUEST_ID, False, error=str(e))
            return

        if not isinstance(message, RequestMessage):
            logger.debug(f"Ignoring {message.type} frame from {connection_id}")
            return

        response, follow_up = await self._handle_request(connection, message)
        await self.connection_manager.send(connection_id, response)
        if follow_up is not None:
            await follow_up()

    async def handle_connection(self, websocket: WebSocket, connection: Connection):
        """Main receive loop for one WebSocket connection."""
        try:
            while True:
                data = await websocket.receive_text()
                await self.handle_message(connection.connection_id, data)
        finally:
            await self.close_connection(connection.connection_id)

    async def handle_http_request(self, method: Union[RequestType, str], params: Optional[Dict[str, Any]] = None) -> ResponseMessage:
        """
        HTTP -> gateway protocol bridge.
        Keeps HTTP and WebSocket on the same request-handler table.
        """
        connection = Connection(None, f"http_{new_id()}")
        connection.is_authenticated = True
        connection.metadata["transport"] = "http"

        key = method.value if isinstance(method, RequestType) else method
        request = GatewayProtocol.create_request(key, params or {})
        response, follow_up = await self._handle_request(connection, request)
        if follow_up is not None:
            await follow_up()
        return response

    async def _handle_request(
        self,
        connection: Connection,
        request: RequestMessage,
    ) -> Tuple[ResponseMessage, Optional[FollowUp]]:
        """Resolve one request to its response (plus an optional follow-up)."""
        if not connection.is_authenticated and request.method != RequestType.CONNECT.value:
            return GatewayProtocol.create_response(request.id, False, error="Not authenticated"), None

        handler = self._handlers.get(request.method)
        if not handler:
            return GatewayProtocol.create_response(
                request.id, False, error=f"Unknown method: {request.method}"
            ), None

        try:
            params = self._validate_request_params(request.method, request.params)
        except ValidationError as e:
            return GatewayProtocol.create_response(
                request.id, False, error=f"Invalid params for {request.method}: {_format_validation_error(e)}"
            ), None

        try:
            result = await handler(connection, request, params)
        except Exception as e:
            logger.exception(f"Error handling request {request.method}: {e}")
            return GatewayProtocol.create_response(request.id, False, error=f"Internal error: {e}"), None

        if isinstance(result, tuple):
            return result
        return result, None

    # ============ Request handlers ============

    async def _handle_connect(self, connection: Connection, request: RequestMessage, params: ConnectParams) -> HandlerResult:
        if self.token and params.token != self.token:
            logger.warning(f"Rejected connect from {connection.connection_id}: invalid token")
            return GatewayProtocol.create_response(request.id, False, error="Invalid token")

        connection.is_authenticated = True
        connection.client_id = params.client_id
        count = self.connection_manager.count()
        payload = {
            "hello": "ok",
            "protocol": PROTOCOL_VERSION,
            "version": SERVER_VERSION,
            "health": {"status": "ok", "clients": count},
        }
        logger.info(f"Client authenticated: {connection.connection_id} ({params.client_id or 'anonymous'})")
        return GatewayProtocol.create_response(request.id, True, payload), self._broadcast_presence

    async def _handle_health(self, connection: Connection, request: RequestMessage, params: None) -> HandlerResult:
        return GatewayProtocol.create_response(request.id, True, {
            "status": "ok",
            "clients": self.connection_manager.count(),
            "sessions": self.sessions.count(),
            "uptime": round(self.uptime, 3),
        })

    async def _handle_agent(self, connection: Connection, request: RequestMessage, params: AgentRunParams) -> HandlerResult:
        run_id = new_id()

        async def start_run():
            task = asyncio.create_task(self._run_agent(connection.connection_id, run_id, params))
            self._runs.add(task)
            task.add_done_callback(self._runs.discard)

        logger.info(f"Agent run {run_id} accepted (session={params.session_id or 'new'})")
        return GatewayProtocol.create_response(request.id, True, {"runId": run_id, "status": "accepted"}), start_run

    async def _handle_send(self, connection: Connection, request: RequestMessage, params: SendParams) -> HandlerResult:
        extra = {"channel": params.channel} if params.channel else None
        message = self.sessions.add_message(params.session_id, "user", params.message, extra)
        return GatewayProtocol.create_response(request.id, True, {"ok": True, "messageId": message.id})

    async def _handle_sessions_list(self, connection: Connection, request: RequestMessage, params: None) -> HandlerResult:
        sessions = [s.summary() for s in self.sessions.list()]
        return GatewayProtocol.create_response(request.id, True, {"sessions": sessions})

    async def _handle_sessions_get(self, connection: Connection, request: RequestMessage, params: SessionParams) -> HandlerResult:
        session = self.sessions.get(params.session_id)
        if not session:
            return GatewayProtocol.create_response(request.id, False, error="Session not found")
        return GatewayProtocol.create_response(request.id, True, {"session": session.to_wire()})

    async def _handle_sessions_history(self, connection: Connection, request: RequestMessage, params: SessionHistoryParams) -> HandlerResult:
        session = self.sessions.get(params.session_id)
        if not session:
            return GatewayProtocol.create_response(request.id, False, error="Session not found")
        messages = session.messages[-params.limit:] if params.limit else session.messages
        return GatewayProtocol.create_response(request.id, True, {
            "messages": [m.to_wire() for m in messages],
        })

    async def _handle_sessions_reset(self, connection: Connection, request: RequestMessage, params: SessionParams) -> HandlerResult:
        if not self.sessions.reset(params.session_id):
            return GatewayProtocol.create_response(request.id, False, error="Session not found")
        return GatewayProtocol.create_response(request.id, True, {"ok": True})

    async def _handle_sessions_delete(self, connection: Connection, request: RequestMessage, params: SessionParams) -> HandlerResult:
        if not self.sessions.delete(params.session_id):
            return GatewayProtocol.create_response(request.id, False, error="Session not found")
        return GatewayProtocol.create_response(request.id, True, {"ok": True})

    async def _handle_pairing_list(self, connection: Connection, request: RequestMessage, params: None) -> HandlerResult:
        entries = [p.to_wire() for p in self.sessions.list_pairing()]
        return GatewayProtocol.create_response(request.id, True, {"entries": entries})

    async def _handle_pairing_approve(self, connection: Connection, request: RequestMessage, params: PairingApproveParams) -> HandlerResult:
        ok = self.sessions.approve_pairing(params.channel, params.user_id)
        return GatewayProtocol.create_response(
            request.id,
            ok,
            {"ok": ok},
            error=None if ok else "Pairing entry not found",
        )

    # ============ Events ============

    async def _broadcast_presence(self) -> None:
        await self.connection_manager.broadcast(
            EventType.PRESENCE.value, {"clients": self.connection_manager.count()}
        )

    async def _run_agent(self, connection_id: str, run_id: str, params: AgentRunParams) -> None:
        """Forward a run's events to its connection; a crash becomes one error event."""
        try:
            async for event in self.agent_runner.run(params, run_id):
                await self.connection_manager.send_event(connection_id, EventType.AGENT.value, event.to_wire())
        except Exception as e:
            logger.exception(f"Agent run {run_id} failed: {e}")
            error_event = AgentStreamEvent(
                run_id=run_id,
                type=AgentEventType.ERROR,
                error=str(e),
                stop_reason=StopReason.ERROR,
            )
            await self.connection_manager.send_event(connection_id, EventType.AGENT.value, error_event.to_wire())


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "params"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)
