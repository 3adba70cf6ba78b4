"""
Feishu (Lark) connector.

Inbound: event-subscription webhook at ``POST /channels/feishu/webhook``.
Outbound: the IM REST API with a tenant access token.
"""
import base64
import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from fastapi import APIRouter, BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from config import FeishuConfig
from gateway.agent_runner import AgentRunner
from gateway.session_store import SessionStore

from .base import BaseChannel, ChannelError, ChannelType

WEBHOOK_PATH = "/channels/feishu/webhook"
MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"
THINKING_EMOJI = "THINKING_FACE"


def decrypt_event(encrypted: str, encrypt_key: str) -> Dict[str, Any]:
    """AES-256-CBC with key sha256(encrypt_key); the IV is the first 16 bytes."""
    key = hashlib.sha256(encrypt_key.encode("utf-8")).digest()
    raw = base64.b64decode(encrypted)
    iv, ciphertext = raw[:16], raw[16:]

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    plain = unpadder.update(padded) + unpadder.finalize()
    return json.loads(plain.decode("utf-8"))


class FeishuChannel(BaseChannel):
    max_message_length = 4000

    def __init__(self, config: FeishuConfig, sessions: SessionStore, agent_runner: AgentRunner):
        super().__init__(
            "feishu",
            ChannelType.FEISHU,
            sessions,
            agent_runner,
            dm_policy=config.dm_policy,
            allow_from=config.allow_from,
            enabled=config.enabled,
        )
        self.config = config
        self.app_id = config.app_id
        self.app_secret = config.app_secret
        self.api_base = config.api_endpoint.rstrip("/")

        self.tenant_access_token: Optional[str] = None
        self.token_expires_at = 0.0

        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> bool:
        self.session = aiohttp.ClientSession()
        if self.app_id and self.app_secret:
            await self._refresh_access_token()
        else:
            self.logger.warning("Feishu app_id/app_secret missing; replies will fail")
        self.is_connected = True
        self.logger.info("Feishu channel connected")
        return True

    async def disconnect(self) -> bool:
        if self.session:
            await self.session.close()
            self.session = None

        self.is_connected = False
        self.logger.info("Feishu channel disconnected")
        return True

    # ============ Outbound ============

    async def _refresh_access_token(self):
        url = f"{self.api_base}/auth/v3/tenant_access_token/internal"
        payload = {
            "app_id": self.app_id,
            "app_secret": self.app_secret
        }

        async with self.session.post(url, json=payload) as response:
            data = await response.json()
            if data.get("code") != 0:
                raise ChannelError(f"Failed to get access token: {data.get('msg') or data}")
            self.tenant_access_token = data.get("tenant_access_token")
            # refresh five minutes early
            self.token_expires_at = time.time() + data.get("expire", 7200) - 300
            self.logger.info("Feishu access token refreshed")

    async def _ensure_token(self):
        if self.session is None:
            self.session = aiohttp.ClientSession()
        if not self.tenant_access_token or time.time() >= self.token_expires_at:
            await self._refresh_access_token()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.tenant_access_token}",
            "Content-Type": "application/json; charset=utf-8"
        }

    async def send_message(self, receiver_id: str, content: str, **kwargs) -> Dict[str, Any]:
        await self._ensure_token()

        url = f"{self.api_base}/im/v1/messages"
        payload = {
            "receive_id": receiver_id,
            "msg_type": "text",
            "content": json.dumps({"text": content}, ensure_ascii=False),
        }
        params = {"receive_id_type": kwargs.get("receive_id_type", "chat_id")}

        async with self.session.post(url, headers=self._headers(), params=params, json=payload) as response:
            result = await response.json()

        if result.get("code") != 0:
            raise ChannelError(f"Feishu send failed: {result.get('msg') or result}")
        return {
            "success": True,
            "message_id": result.get("data", {}).get("message_id"),
        }

    async def add_reaction(self, message_id: str, emoji_type: str = THINKING_EMOJI) -> None:
        await self._ensure_token()
        url = f"{self.api_base}/im/v1/messages/{message_id}/reactions"
        payload = {"reaction_type": {"emoji_type": emoji_type}}
        async with self.session.post(url, headers=self._headers(), json=payload) as response:
            result = await response.json()
        if result.get("code") != 0:
            self.logger.debug(f"Reaction on {message_id} rejected: {result.get('msg')}")

    async def on_turn_started(self, message_id: str) -> None:
        try:
            await self.add_reaction(message_id)
        except (aiohttp.ClientError, ChannelError) as e:
            self.logger.debug(f"Could not add thinking reaction: {e}")

    # ============ Inbound ============

    def parse_webhook(self, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any], Optional[Dict[str, Any]]]:
        """Validate a webhook body.

        Returns ``(status_code, response_body, event)``; ``event`` is set
        only when there is something to process after acknowledging.
        """
        if self.config.encrypt_key and body.get("encrypt"):
            try:
                body = decrypt_event(body["encrypt"], self.config.encrypt_key)
            except (ValueError, TypeError) as e:
                self.logger.warning(f"Feishu event decrypt failed: {e}")
                return 400, {"error": "decrypt failed"}, None

        if body.get("type") == "url_verification":
            if self.config.verification_token and body.get("token") != self.config.verification_token:
                return 401, {"error": "invalid token"}, None
            return 200, {"challenge": body.get("challenge")}, None

        if self.config.verification_token:
            token = body.get("token") or (body.get("header") or {}).get("token")
            if token != self.config.verification_token:
                self.logger.warning("Feishu event with bad verification token rejected")
                return 401, {"error": "invalid token"}, None

        return 200, {"code": 0}, body

    async def process_event(self, body: Dict[str, Any]) -> None:
        header = body.get("header") or {}
        event = body.get("event") or {}
        event_type = header.get("event_type") or event.get("type")
        if event_type != MESSAGE_RECEIVE_EVENT and not event.get("message"):
            self.logger.debug(f"Ignoring Feishu event {event_type}")
            return

        message = event.get("message") or {}
        if message.get("message_type") != "text":
            return

        try:
            text = json.loads(message.get("content") or "{}").get("text", "")
        except ValueError:
            self.logger.warning(f"Unparseable Feishu message content: {message.get('content')!r}")
            return

        sender_id = ((event.get("sender") or {}).get("sender_id") or {}).get("open_id", "")
        chat_id = message.get("chat_id", "")
        message_id = message.get("message_id", "")
        if not sender_id or not chat_id:
            return

        await self.handle_incoming(message_id, sender_id, chat_id, text)

    def mount(self, app: FastAPI) -> None:
        router = APIRouter()

        @router.post(WEBHOOK_PATH)
        async def feishu_webhook(request: Request, background_tasks: BackgroundTasks):
            try:
                body = await request.json()
            except ValueError:
                return JSONResponse(status_code=400, content={"error": "invalid json"})

            status_code, content, event = self.parse_webhook(body if isinstance(body, dict) else {})
            if event is not None:
                background_tasks.add_task(self.process_event, event)
            return JSONResponse(status_code=status_code, content=content)

        app.include_router(router)
        self.logger.info(f"Webhook mounted at POST {WEBHOOK_PATH}")
