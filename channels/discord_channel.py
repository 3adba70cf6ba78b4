"""
Discord connector.

Inbound and outbound both ride the bot's gateway session (discord.py).
Only direct messages and @mentions of the bot are answered; messages from
other bots are ignored.
"""
import asyncio
from typing import Any, Dict, Optional

import discord

from config import DiscordConfig
from gateway.agent_runner import AgentRunner
from gateway.session_store import SessionStore

from .base import BaseChannel, ChannelError, ChannelType

EMPTY_PROMPT_REPLY = "🦞 How can I help you?"


def build_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True
    intents.dm_messages = True
    intents.guild_messages = True
    return intents


class DiscordChannel(BaseChannel):
    max_message_length = 2000

    def __init__(
        self,
        config: DiscordConfig,
        sessions: SessionStore,
        agent_runner: AgentRunner,
        client: Optional[discord.Client] = None,
    ):
        super().__init__(
            "discord",
            ChannelType.DISCORD,
            sessions,
            agent_runner,
            dm_policy=config.dm_policy,
            allow_from=config.allow_from,
            enabled=config.enabled and bool(config.token),
        )
        self.config = config
        self.client = client
        self._client_task: Optional[asyncio.Task] = None

        # inbound messages being answered, by message id
        self._pending: Dict[str, discord.Message] = {}

    async def connect(self) -> bool:
        if not self.config.token:
            self.logger.warning("No Discord bot token configured; channel disabled")
            return False

        if self.client is None:
            self.client = discord.Client(intents=build_intents())
        client = self.client

        @client.event
        async def on_ready():
            self.logger.info(f"Logged in to Discord as {client.user}")

        @client.event
        async def on_message(message: discord.Message):
            await self.handle_message(message)

        self._client_task = asyncio.create_task(client.start(self.config.token))
        self._client_task.add_done_callback(self._on_client_exit)
        return True

    def _on_client_exit(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Discord client stopped: {error}")
            self.is_connected = False

    async def disconnect(self) -> bool:
        if self.client is not None:
            await self.client.close()
        if self._client_task is not None:
            if not self._client_task.done():
                self._client_task.cancel()
            await asyncio.gather(self._client_task, return_exceptions=True)
            self._client_task = None

        self.is_connected = False
        self.logger.info("Discord channel disconnected")
        return True

    # ============ Outbound ============

    async def send_message(self, receiver_id: str, content: str, **kwargs) -> Dict[str, Any]:
        """Reply to ``message`` when given, otherwise post to channel ``receiver_id``."""
        message = kwargs.get("message")
        try:
            if message is not None:
                sent = await message.reply(content)
            else:
                channel = self.client.get_channel(int(receiver_id))
                if channel is None:
                    channel = await self.client.fetch_channel(int(receiver_id))
                sent = await channel.send(content)
        except discord.HTTPException as e:
            raise ChannelError(f"Discord send failed: {e}") from e
        return {"success": True, "message_id": str(sent.id)}

    async def on_turn_started(self, message_id: str) -> None:
        message = self._pending.get(message_id)
        if message is None:
            return
        try:
            await message.channel.typing()
        except discord.HTTPException as e:
            self.logger.debug(f"Could not send typing indicator: {e}")

    # ============ Inbound ============

    def extract_prompt(self, message: discord.Message) -> Optional[str]:
        """Return the text addressed to the bot, or ``None`` if the message is not for it."""
        if message.author.bot:
            return None

        me = self.client.user if self.client else None
        is_dm = message.guild is None
        is_mentioned = me is not None and any(user.id == me.id for user in message.mentions)
        if not is_dm and not is_mentioned:
            return None

        text = message.content or ""
        if is_mentioned:
            text = text.replace(f"<@{me.id}>", "").replace(f"<@!{me.id}>", "")
        return text.strip()

    async def handle_message(self, message: discord.Message) -> None:
        text = self.extract_prompt(message)
        if text is None:
            return

        user_id = str(message.author.id)
        receiver_id = str(message.channel.id)
        message_id = str(message.id)

        if not text:
            decision = self.check_access(user_id)
            reply = EMPTY_PROMPT_REPLY if decision.allowed else decision.reply
            if reply:
                await self.reply(receiver_id, reply, message=message)
            return

        self._pending[message_id] = message
        try:
            await self.handle_incoming(message_id, user_id, receiver_id, text, message=message)
        finally:
            self._pending.pop(message_id, None)

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        user = self.client.user if self.client else None
        status["bot_user"] = str(user) if user else None
        return status
