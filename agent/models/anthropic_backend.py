import json
from typing import Any, AsyncIterator, Dict, List, Optional

import anthropic
from loguru import logger

from gateway.protocol import Usage

from .types import ModelMessage, ModelStreamEvent, ToolDefinition


def _to_anthropic_messages(messages: List[ModelMessage]) -> List[Dict[str, Any]]:
    """Convert working history to Anthropic content blocks.

    An assistant turn that was followed by a tool message carries a
    ``tool_use`` block; the tool message becomes a user ``tool_result``.
    """
    out: List[Dict[str, Any]] = []
    for i, msg in enumerate(messages):
        if msg.role == "tool":
            out.append({
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content,
                }],
            })
            continue

        if msg.role == "assistant":
            nxt = messages[i + 1] if i + 1 < len(messages) else None
            if nxt is not None and nxt.role == "tool":
                blocks: List[Dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                blocks.append({
                    "type": "tool_use",
                    "id": nxt.tool_call_id or "",
                    "name": nxt.tool_name or "",
                    "input": nxt.tool_input or {},
                })
                out.append({"role": "assistant", "content": blocks})
                continue

        out.append({"role": msg.role, "content": msg.content})
    return out


class AnthropicBackend:
    name = "anthropic"

    def __init__(self, api_key: Optional[str], client: Optional[anthropic.AsyncAnthropic] = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

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
            system=system_prompt,
            messages=_to_anthropic_messages(messages),
        )
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]

        logger.debug(f"API request: model={model}, max_tokens={max_tokens}, messages={len(messages)}, tools={len(tools)}")

        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield ModelStreamEvent.text(event.delta.text)

            response = await stream.get_final_message()

        for block in response.content:
            if block.type == "tool_use":
                tool_input = block.input if isinstance(block.input, dict) else json.loads(block.input or "{}")
                yield ModelStreamEvent.tool_call(block.id, block.name, tool_input)
                break

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        yield ModelStreamEvent.done(
            Usage(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens),
            response.stop_reason,
        )
