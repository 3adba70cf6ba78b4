"""
Conversation runner - drives one user turn through the model backend.

The loop allows the model at most one tool call per round and at most
``MAX_ITERATIONS`` rounds. Every run ends with exactly one ``done`` event.
"""
from typing import AsyncIterator, List, Optional

from loguru import logger

from gateway.models import MessageRole
from gateway.protocol import AgentEventType, AgentRunParams, AgentStreamEvent, StopReason, Usage
from gateway.session_store import SessionStore

from .models import ModelBackend, ModelMessage, ModelStreamEvent, split_model_id
from .skills import SkillsLoader
from .tools import ToolService

MAX_ITERATIONS = 10
PERSONA = (
    "You are a helpful personal AI assistant (Pincer). "
    "You are concise, accurate, and proactive."
)


class ConversationRunner:

    def __init__(
        self,
        sessions: SessionStore,
        backend: ModelBackend,
        model: str,
        max_tokens: int = 8192,
        tools: Optional[ToolService] = None,
        skills: Optional[SkillsLoader] = None,
        persona: str = PERSONA,
    ):
        self.sessions = sessions
        self.backend = backend
        self.model = model
        self.max_tokens = max_tokens
        self.tools = tools or ToolService()
        self.skills = skills
        self.persona = persona

    def build_system_prompt(self) -> str:
        if not self.skills:
            return self.persona
        return self.persona + self.skills.build_system_prompt_appendix(self.skills.load())

    def _history(self, session_id: str) -> List[ModelMessage]:
        session = self.sessions.get(session_id)
        return [
            ModelMessage(role=m.role.value, content=m.content)
            for m in session.messages
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ]

    async def run(self, params: AgentRunParams, run_id: str) -> AsyncIterator[AgentStreamEvent]:
        session = self.sessions.get_or_create(params.session_id)
        self.sessions.add_message(session.id, MessageRole.USER, params.message)

        messages = self._history(session.id)
        system_prompt = self.build_system_prompt()
        tool_definitions = self.tools.definitions()
        _, model = split_model_id(params.model or self.model)

        usage: Optional[Usage] = None
        stop_reason = StopReason.MAX_ITERATIONS

        for iteration in range(1, MAX_ITERATIONS + 1):
            response_text = ""
            pending: Optional[ModelStreamEvent] = None

            try:
                async for event in self.backend.stream(messages, system_prompt, tool_definitions, model, self.max_tokens):
                    if event.type == "delta" and event.delta:
                        response_text += event.delta
                        yield AgentStreamEvent(run_id=run_id, type=AgentEventType.DELTA, delta=event.delta)
                    elif event.type == "tool_call" and pending is None:
                        pending = event
                        yield AgentStreamEvent(
                            run_id=run_id,
                            type=AgentEventType.TOOL_CALL,
                            tool_name=event.tool_name,
                            tool_input=event.tool_input or {},
                        )
                    elif event.type == "done" and event.usage:
                        usage = event.usage if usage is None else usage + event.usage
            except Exception as e:
                logger.exception(f"Model backend failed in run {run_id}, round {iteration}: {e}")
                yield AgentStreamEvent(run_id=run_id, type=AgentEventType.ERROR, error=str(e))
                if response_text:
                    self.sessions.add_message(session.id, MessageRole.ASSISTANT, response_text)
                stop_reason = StopReason.ERROR
                break

            if pending is None:
                if response_text:
                    self.sessions.add_message(session.id, MessageRole.ASSISTANT, response_text)
                stop_reason = StopReason.COMPLETE
                break

            result = await self.tools.call_tool(pending.tool_name or "", pending.tool_input)
            yield AgentStreamEvent(
                run_id=run_id,
                type=AgentEventType.TOOL_RESULT,
                tool_name=pending.tool_name,
                tool_result=result,
            )

            # Tool rounds stay in the working copy; only final text is persisted.
            messages.append(ModelMessage(role="assistant", content=response_text))
            messages.append(ModelMessage(
                role="tool",
                content=result,
                tool_call_id=pending.tool_call_id,
                tool_name=pending.tool_name,
                tool_input=pending.tool_input,
            ))
        else:
            logger.warning(f"Run {run_id} stopped after {MAX_ITERATIONS} tool rounds")

        yield AgentStreamEvent(run_id=run_id, type=AgentEventType.DONE, usage=usage, stop_reason=stop_reason)

    async def close(self) -> None:
        await self.tools.close()
