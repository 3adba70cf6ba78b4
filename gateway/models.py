"""
Conversation data models: sessions, messages and pairing entries.

All timestamps are integer milliseconds since the Unix epoch. Fields use
snake_case in Python and camelCase on the wire and on disk.
"""
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class WireModel(BaseModel):
    """Base for everything that crosses the wire or hits the disk."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Message(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str
    timestamp: int = Field(default_factory=now_ms)
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    channel: Optional[str] = None
    channel_user_id: Optional[str] = None


class Session(WireModel):
    id: str = Field(default_factory=new_id)
    name: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    model: Optional[str] = None
    channel: Optional[str] = None
    channel_user_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def touch(self) -> None:
        self.updated_at = max(self.updated_at, now_ms())

    def summary(self) -> Dict[str, Any]:
        """Listing view; never carries message bodies."""
        data = {
            "id": self.id,
            "name": self.name,
            "channel": self.channel,
            "messageCount": len(self.messages),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        return {k: v for k, v in data.items() if v is not None}


class PairingEntry(WireModel):
    user_id: str
    channel: str
    approved: bool = False
    pairing_code: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    approved_at: Optional[int] = None

    @property
    def key(self) -> str:
        return pairing_key(self.channel, self.user_id)


def pairing_key(channel: str, user_id: str) -> str:
    return f"{channel}:{user_id}"
