import json
from typing import Any, AsyncIterator, Dict, List, Optional

import openai
from loguru import logger

from gateway.protocol import Usage

from .types import ModelMessage, ModelStreamEvent, ToolDefinition

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
ZHIPU_BASE_URL = "https://open.bigmodel.cn/api/paas/v4"


def _to_openai_messages(system_prompt: str, messages: List[ModelMessage]) -> List[Dict[str, Any]]:
    """Convert working history to chat-completions format."""
    out: List[Dict[str, Any]] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for i, msg in enumerate(messages):
        if msg.role == "tool":
            out.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": msg.content,
            })
            continue

        nxt = messages[i + 1] if i + 1 < len(messages) else None
        if msg.role == "assistant" and nxt is not None and nxt.role == "tool":
            out.append({
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [{
                    "id": nxt.tool_call_id or "",
                    "type": "function",
                    "function": {
                        "name": nxt.tool_name or "",
                        "arguments": json.dumps(nxt.tool_input or {}),
                    },
                }],
            })
            continue

        out.append({"role": msg.role, "content": msg.content})
    return out


def _to_openai_tools(tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


class OpenAIBackend:
    """Chat-completions backend; DeepSeek and Zhipu reuse it through ``base_url``."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        name: str = "openai",
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self.name = name
        self._client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream(
        self,
        messages: List[ModelMessage],
        system_prompt: str,
        tools: List[ToolDefinition],
        model: str,
        max_tokens: int,
    ) -> AsyncIterator[ModelStreamEvent]:
        kwargs: Dict[str, Any] = dict(
            model=model,
            max_tokens=max_tokens,
            messages=_to_openai_messages(system_prompt, messages),
            stream=True,
            stream_options={"include_usage": True},
        )
        if tools:
            kwargs["tools"] = _to_openai_tools(tools)

        logger.debug(f"API request ({self.name}): model={model}, messages={len(messages)}, tools={len(tools)}")

        # index -> {"id", "name", "arguments_parts"}
        tool_calls_acc: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None
        usage: Optional[Usage] = None

        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if getattr(chunk, "usage", None):
                usage = Usage(
                    input_tokens=chunk.usage.prompt_tokens or 0,
                    output_tokens=chunk.usage.completion_tokens or 0,
                )

            choice = chunk.choices[0] if chunk.choices else None
            if choice is None:
                continue
            if choice.finish_reason:
                finish_reason = choice.finish_reason

            delta = choice.delta
            if delta is None:
                continue
            if delta.content:
                yield ModelStreamEvent.text(delta.content)

            for tc_delta in delta.tool_calls or []:
                acc = tool_calls_acc.setdefault(tc_delta.index, {"id": "", "name": "", "arguments_parts": []})
                if tc_delta.id:
                    acc["id"] = tc_delta.id
                if tc_delta.function:
                    if tc_delta.function.name:
                        acc["name"] = tc_delta.function.name
                    if tc_delta.function.arguments:
                        acc["arguments_parts"].append(tc_delta.function.arguments)

        if tool_calls_acc:
            acc = tool_calls_acc[min(tool_calls_acc)]
            raw_args = "".join(acc["arguments_parts"])
            try:
                parsed_input = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                parsed_input = {}
            yield ModelStreamEvent.tool_call(acc["id"], acc["name"], parsed_input)

        logger.debug(f"API response ({self.name}): finish_reason={finish_reason}, tool_calls={len(tool_calls_acc)}")
        yield ModelStreamEvent.done(usage, finish_reason)
