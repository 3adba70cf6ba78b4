"""
Agent runner interface consumed by the gateway.

A runner turns one ``AgentRunParams`` into an async stream of
``AgentStreamEvent``; the gateway forwards each event to the requesting client.
"""
from typing import AsyncIterator, Protocol, runtime_checkable

from .protocol import AgentEventType, AgentRunParams, AgentStreamEvent, StopReason
from .session_store import SessionStore


@runtime_checkable
class AgentRunner(Protocol):
    def run(self, params: AgentRunParams, run_id: str) -> AsyncIterator[AgentStreamEvent]:
        ...


class StubAgentRunner:
    """Used when no model backend is configured. Echoes a hint and finishes."""

    def __init__(self, sessions: SessionStore):
        self.sessions = sessions

    async def run(self, params: AgentRunParams, run_id: str) -> AsyncIterator[AgentStreamEvent]:
        session = self.sessions.get_or_create(params.session_id)
        self.sessions.add_message(session.id, "user", params.message)
        reply = (
            "No model backend is configured. Set ANTHROPIC_API_KEY, OPENAI_API_KEY, "
            "DEEPSEEK_API_KEY or ZHIPU_API_KEY and restart the gateway."
        )
        yield AgentStreamEvent(run_id=run_id, type=AgentEventType.DELTA, delta=reply)
        self.sessions.add_message(session.id, "assistant", reply)
        yield AgentStreamEvent(run_id=run_id, type=AgentEventType.DONE, stop_reason=StopReason.COMPLETE)
