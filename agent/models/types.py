"""
Model backend types.

A backend streams one model invocation as ``ModelStreamEvent`` items:
zero or more ``delta`` events, at most one ``tool_call`` (emitted only once
its input is complete) and exactly one closing ``done``.
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from gateway.protocol import Usage


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelMessage:
    role: str  # user | assistant | tool
    content: str
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None


@dataclass
class ModelStreamEvent:
    type: str  # delta | tool_call | done
    delta: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    usage: Optional[Usage] = None
    stop_reason: Optional[str] = None

    @classmethod
    def text(cls, delta: str) -> "ModelStreamEvent":
        return cls(type="delta", delta=delta)

    @classmethod
    def tool_call(cls, call_id: str, name: str, tool_input: Dict[str, Any]) -> "ModelStreamEvent":
        return cls(type="tool_call", tool_call_id=call_id, tool_name=name, tool_input=tool_input)

    @classmethod
    def done(cls, usage: Optional[Usage] = None, stop_reason: Optional[str] = None) -> "ModelStreamEvent":
        return cls(type="done", usage=usage, stop_reason=stop_reason)


@runtime_checkable
class ModelBackend(Protocol):
    name: str

    def stream(
        self,
        messages: List[ModelMessage],
        system_prompt: str,
        tools: List[ToolDefinition],
        model: str,
        max_tokens: int,
    ) -> AsyncIterator[ModelStreamEvent]:
        ...
