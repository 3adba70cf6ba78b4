"""
Channel base class - shared behaviour for chat-platform connectors.

A connector receives platform messages, decides whether the sender may talk
to the assistant, runs the turn through the agent runner and delivers the
reply in platform-sized chunks.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI
from loguru import logger

from gateway.agent_runner import AgentRunner
from gateway.models import new_id
from gateway.protocol import AgentEventType, AgentRunParams
from gateway.session_store import SessionStore

NO_RESPONSE_TEXT = "(no response)"


class ChannelType(str, Enum):
    DISCORD = "discord"
    FEISHU = "feishu"


class DMPolicy(str, Enum):
    OPEN = "open"          # everyone, optionally narrowed by allow_from
    PAIRING = "pairing"    # first contact gets a code; admin approves


@dataclass
class AccessDecision:
    allowed: bool
    reply: Optional[str] = None


def split_text(text: str, max_length: int) -> List[str]:
    return [text[i:i + max_length] for i in range(0, len(text), max_length)]


class ChannelError(Exception):
    """Raised by a connector when the platform rejects a call."""


class BaseChannel(ABC):
    """Channel base class"""

    max_message_length = 4000

    def __init__(
        self,
        channel_name: str,
        channel_type: ChannelType,
        sessions: SessionStore,
        agent_runner: AgentRunner,
        dm_policy: str = DMPolicy.OPEN.value,
        allow_from: Optional[List[str]] = None,
        enabled: bool = True,
    ):
        self.channel_name = channel_name
        self.channel_type = channel_type
        self.sessions = sessions
        self.agent_runner = agent_runner
        self.dm_policy = DMPolicy(dm_policy)
        self.allow_from = list(allow_from or [])
        self.enabled = enabled
        self.is_connected = False
        self.is_running = False

        self.logger = logger.bind(channel=self.channel_name)

        # platform message ids currently being answered
        self._in_flight: Set[str] = set()

    # ============ Abstract methods ============

    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        pass

    @abstractmethod
    async def send_message(self, receiver_id: str, content: str, **kwargs) -> Dict[str, Any]:
        """Deliver one chunk of text; raise ``ChannelError`` when the platform refuses."""

    def mount(self, app: FastAPI) -> None:
        """Attach webhook routes. Connectors without inbound HTTP keep the default."""

    # ============ Common methods ============

    async def start(self) -> bool:
        if self.is_running:
            self.logger.warning(f"Channel {self.channel_name} is already running")
            return True

        if not self.enabled:
            self.logger.info(f"Channel {self.channel_name} is disabled")
            return False

        try:
            connected = await self.connect()
        except Exception as e:
            self.logger.error(f"Error starting channel {self.channel_name}: {e}")
            return False

        if not connected:
            self.logger.error(f"Failed to connect channel {self.channel_name}")
            return False

        self.is_running = True
        self.is_connected = True
        self.logger.info(f"Channel {self.channel_name} started successfully")
        return True

    async def stop(self) -> bool:
        if not self.is_running:
            return True

        try:
            await self.disconnect()
        except Exception as e:
            self.logger.error(f"Error stopping channel {self.channel_name}: {e}")
            return False
        self.is_running = False
        self.is_connected = False
        self.logger.info(f"Channel {self.channel_name} stopped")
        return True

    def check_access(self, user_id: str) -> AccessDecision:
        if self.dm_policy == DMPolicy.PAIRING:
            if self.sessions.is_approved(self.channel_name, user_id):
                return AccessDecision(True)
            pairing = self.sessions.get_pairing(self.channel_name, user_id)
            if pairing is None:
                entry = self.sessions.create_pairing(self.channel_name, user_id)
                return AccessDecision(False, (
                    "🦞 Hello! To use this assistant, you need to be approved.\n"
                    f"Your pairing code is: {entry.pairing_code}\n"
                    f"Ask the admin to run: pincer pairing approve {self.channel_name} {user_id}"
                ))
            return AccessDecision(False, f"⏳ Your pairing request is pending approval. Code: {pairing.pairing_code}")

        if self.allow_from and user_id not in self.allow_from and "*" not in self.allow_from:
            self.logger.info(f"Ignoring message from {user_id}: not in allow list")
            return AccessDecision(False)
        return AccessDecision(True)

    async def run_agent(self, user_id: str, text: str) -> str:
        """Run one turn in the sender's channel session and return the reply text."""
        session = self.sessions.get_or_create_for_channel(self.channel_name, user_id)
        params = AgentRunParams(message=text, session_id=session.id)
        parts: List[str] = []
        errors: List[str] = []
        async for event in self.agent_runner.run(params, new_id()):
            if event.type == AgentEventType.DELTA and event.delta:
                parts.append(event.delta)
            elif event.type == AgentEventType.ERROR and event.error:
                errors.append(event.error)
        reply = "".join(parts)
        if not reply and errors:
            raise ChannelError(errors[-1])
        return reply or NO_RESPONSE_TEXT

    async def reply(self, receiver_id: str, text: str, **kwargs) -> None:
        for chunk in split_text(text, self.max_message_length):
            await self.send_message(receiver_id, chunk, **kwargs)

    async def handle_incoming(self, message_id: str, user_id: str, receiver_id: str, text: str, **kwargs) -> None:
        """Full inbound path: dedupe, access policy, turn, chunked reply."""
        text = (text or "").strip()
        if not text or not user_id:
            return
        if message_id in self._in_flight:
            self.logger.debug(f"Duplicate delivery of {message_id} ignored")
            return

        decision = self.check_access(user_id)
        if not decision.allowed:
            if decision.reply:
                await self.reply(receiver_id, decision.reply, **kwargs)
            return

        self._in_flight.add(message_id)
        try:
            await self.on_turn_started(message_id)
            reply = await self.run_agent(user_id, text)
            await self.reply(receiver_id, reply, **kwargs)
        except Exception as e:
            self.logger.exception(f"Failed to answer {message_id}: {e}")
            try:
                await self.reply(receiver_id, f"❌ Error: {e}", **kwargs)
            except Exception as send_error:
                self.logger.error(f"Could not deliver error reply: {send_error}")
        finally:
            self._in_flight.discard(message_id)

    async def on_turn_started(self, message_id: str) -> None:
        """Hook for platform 'typing'/'thinking' indicators."""

    def get_status(self) -> Dict[str, Any]:
        return {
            "channel_name": self.channel_name,
            "channel_type": self.channel_type.value,
            "is_connected": self.is_connected,
            "is_running": self.is_running,
            "enabled": self.enabled,
            "dm_policy": self.dm_policy.value,
        }
