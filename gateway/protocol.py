"""
Gateway protocol definition - WebSocket communication protocol.

Three frame shapes travel over the connection:

* ``req``   client -> gateway, ``{type, id, method, params}``
* ``res``   gateway -> client, exactly one per request, ``{type, id, ok, payload?, error?}``
* ``event`` gateway -> client, ``{type, event, payload?, seq}`` where ``seq`` is
  a gateway-wide counter clients can use to detect gaps.
"""
import json
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .models import WireModel, new_id

PROTOCOL_VERSION = 1
SERVER_VERSION = "0.1.0"


class FrameError(ValueError):
    """Raised when inbound bytes are not a valid frame."""


class RequestType(str, Enum):
    """Request method type."""
    CONNECT = "connect"                  # Connection handshake
    HEALTH = "health"                    # Health check
    AGENT = "agent"                      # Run one conversational turn
    SEND = "send"                        # Append a user message, no model call

    # Session management
    SESSIONS_LIST = "sessions.list"
    SESSIONS_GET = "sessions.get"
    SESSIONS_HISTORY = "sessions.history"
    SESSIONS_RESET = "sessions.reset"
    SESSIONS_DELETE = "sessions.delete"

    # Pairing workflow
    PAIRING_LIST = "pairing.list"
    PAIRING_APPROVE = "pairing.approve"


class EventType(str, Enum):
    """Event type."""
    AGENT = "agent"                      # Turn orchestrator stream
    PRESENCE = "presence"                # Live client count changed


class AgentEventType(str, Enum):
    DELTA = "delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    DONE = "done"
    ERROR = "error"


class StopReason(str, Enum):
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


class ThinkingLevel(str, Enum):
    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============ Frames ============

class RequestMessage(BaseModel):
    """Generic request message envelope."""
    type: Literal["req"] = "req"
    id: str
    method: str
    params: Optional[Any] = None


class ResponseMessage(BaseModel):
    """Generic response message envelope."""
    type: Literal["res"] = "res"
    id: str  # Corresponding request ID
    ok: bool
    payload: Optional[Any] = None
    error: Optional[str] = None


class EventMessage(BaseModel):
    """Generic event message envelope."""
    type: Literal["event"] = "event"
    event: str
    payload: Optional[Any] = None
    seq: Optional[int] = None


Frame = Annotated[
    Union[RequestMessage, ResponseMessage, EventMessage],
    Field(discriminator="type"),
]
_frame_adapter = TypeAdapter(Frame)


# ============ Method params ============

class AuthParams(WireModel):
    token: Optional[str] = None


class ConnectParams(WireModel):
    """Connection parameters for the initial handshake."""
    auth: Optional[AuthParams] = None
    client_id: Optional[str] = None
    version: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self.auth.token if self.auth else None


class AgentRunParams(WireModel):
    """Payload for an agent turn."""
    message: str
    session_id: Optional[str] = None
    model: Optional[str] = None
    thinking_level: Optional[ThinkingLevel] = None
    stream: bool = True


class SendParams(WireModel):
    session_id: str
    message: str
    channel: Optional[str] = None


class SessionParams(WireModel):
    """Payload that only contains a session id."""
    session_id: str


class SessionHistoryParams(WireModel):
    session_id: str
    limit: Optional[int] = Field(default=None, ge=1)


class PairingApproveParams(WireModel):
    channel: str
    user_id: str


# ============ Event payloads ============

class Usage(WireModel):
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class AgentStreamEvent(WireModel):
    """One item of an agent run's event stream."""
    run_id: str
    type: AgentEventType
    delta: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_result: Optional[str] = None
    error: Optional[str] = None
    usage: Optional[Usage] = None
    stop_reason: Optional[StopReason] = None


class GatewayProtocol:
    """Helper utilities for building/parsing gateway protocol messages."""

    @staticmethod
    def create_request(method: str, params: Optional[Dict[str, Any]] = None, request_id: Optional[str] = None) -> RequestMessage:
        """Create a request message."""
        return RequestMessage(id=request_id or new_id(), method=method, params=params or {})

    @staticmethod
    def create_response(
        request_id: str,
        ok: bool,
        payload: Optional[Any] = None,
        error: Optional[str] = None
    ) -> ResponseMessage:
        """Create a response message."""
        return ResponseMessage(id=request_id, ok=ok, payload=payload, error=error)

    @staticmethod
    def create_event(
        event: str,
        payload: Optional[Any] = None,
        seq: Optional[int] = None
    ) -> EventMessage:
        """Create an event message."""
        return EventMessage(event=event, payload=payload, seq=seq)

    @staticmethod
    def parse_message(data: Union[str, bytes]) -> Union[RequestMessage, ResponseMessage, EventMessage]:
        """Parse an incoming JSON string into a protocol message.

        Raises ``FrameError("Invalid JSON")`` for undecodable input and
        ``FrameError("Invalid frame")`` for JSON that is not a known frame.
        """
        try:
            raw = json.loads(data)
        except (TypeError, ValueError) as e:
            raise FrameError("Invalid JSON") from e
        try:
            return _frame_adapter.validate_python(raw)
        except ValidationError as e:
            raise FrameError("Invalid frame") from e

    @staticmethod
    def dump(frame: BaseModel) -> str:
        return frame.model_dump_json(exclude_none=True)
