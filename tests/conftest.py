"""
Shared test fixtures: fake WebSockets, a temp-dir store and scripted runners.
"""
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# project root on sys.path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest
from starlette.websockets import WebSocketState

from agent.models import ModelStreamEvent
from gateway.protocol import AgentEventType, AgentStreamEvent, StopReason, Usage
from gateway.session_store import SessionStore

PROVIDER_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "DEEPSEEK_API_KEY",
    "ZHIPU_API_KEY",
    "PINCER_GATEWAY_PORT",
    "PINCER_GATEWAY_TOKEN",
    "DISCORD_BOT_TOKEN",
    "FEISHU_APP_ID",
    "FEISHU_APP_SECRET",
    "FEISHU_VERIFICATION_TOKEN",
    "FEISHU_ENCRYPT_KEY",
)


class FakeWebSocket:
    """Records every frame written to it."""

    def __init__(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: List[str] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(s) for s in self.sent]

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            f for f in self.frames()
            if f["type"] == "event" and (name is None or f["event"] == name)
        ]

    def responses(self) -> List[Dict[str, Any]]:
        return [f for f in self.frames() if f["type"] == "res"]

    def close(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED


class ScriptedBackend:
    """Model backend that replays one scripted list of events per round.

    The last round repeats once the script runs out. An exception instance in
    a round is raised at that point of the stream.
    """

    name = "scripted"

    def __init__(self, rounds: List[List[Any]]):
        self.rounds = rounds
        self.calls: List[Dict[str, Any]] = []

    async def stream(self, messages, system_prompt, tools, model, max_tokens):
        self.calls.append({
            "messages": list(messages),
            "system_prompt": system_prompt,
            "tools": list(tools),
            "model": model,
            "max_tokens": max_tokens,
        })
        script = self.rounds[min(len(self.calls), len(self.rounds)) - 1]
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item


class EchoRunner:
    """Agent runner answering ``echo: <message>``, persisting both sides."""

    def __init__(self, sessions: SessionStore, reply: Optional[str] = None):
        self.sessions = sessions
        self.reply = reply

    async def run(self, params, run_id):
        session = self.sessions.get_or_create(params.session_id)
        self.sessions.add_message(session.id, "user", params.message)
        text = self.reply if self.reply is not None else f"echo: {params.message}"
        yield AgentStreamEvent(run_id=run_id, type=AgentEventType.DELTA, delta=text)
        self.sessions.add_message(session.id, "assistant", text)
        yield AgentStreamEvent(run_id=run_id, type=AgentEventType.DONE, stop_reason=StopReason.COMPLETE)


class FailingRunner:
    """Agent runner that blows up before yielding anything."""

    def __init__(self, message: str = "boom"):
        self.message = message

    async def run(self, params, run_id):
        raise RuntimeError(self.message)
        yield  # pragma: no cover


@pytest.fixture(autouse=True)
def pincer_home(tmp_path, monkeypatch):
    """Isolate every test from the real ~/.pincer and provider keys."""
    home = tmp_path / "pincer_home"
    monkeypatch.setenv("PINCER_HOME", str(home))
    for var in PROVIDER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions")


@pytest.fixture
def text_backend():
    """Backend answering "hi" with usage 5 in / 1 out."""
    return ScriptedBackend([[
        ModelStreamEvent.text("hi"),
        ModelStreamEvent.done(Usage(input_tokens=5, output_tokens=1), "end_turn"),
    ]])
