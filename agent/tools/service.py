"""
Tool service

Registry for the tools a conversation may call. Tools are plain objects
satisfying the ``Tool`` protocol; the service never lets a tool exception
escape, it turns failures into text the model can read.
"""
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger

from ..models.types import ToolDefinition


@runtime_checkable
class Tool(Protocol):
    """
    Tool capability

    ``execute`` receives the model-supplied input object and returns text.
    """

    name: str
    description: str
    input_schema: Dict[str, Any]

    async def execute(self, tool_input: Dict[str, Any]) -> str:  # pragma: no cover - protocol
        ...


class ToolService:

    def __init__(self, tools: Optional[List[Tool]] = None) -> None:
        self._registered_tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register_tool(tool)

    def register_tool(self, tool: Tool) -> None:
        if tool.name in self._registered_tools:
            logger.warning(f"Tool already registered: {tool.name}, will overwrite")
        self._registered_tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name}")

    def unregister_tool(self, name: str) -> None:
        if name in self._registered_tools:
            del self._registered_tools[name]
            logger.info(f"Unregistered tool: {name}")

    def get(self, name: str) -> Optional[Tool]:
        return self._registered_tools.get(name)

    def list_tools(self) -> List[str]:
        return list(self._registered_tools)

    def definitions(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(name=t.name, description=t.description, input_schema=t.input_schema)
            for t in self._registered_tools.values()
        ]

    async def call_tool(self, name: str, tool_input: Optional[Dict[str, Any]] = None) -> str:
        tool = self._registered_tools.get(name)
        if tool is None:
            logger.warning(f"Model requested unknown tool: {name}")
            return f"Unknown tool: {name}"

        try:
            result = await tool.execute(tool_input or {})
        except Exception as e:
            logger.warning(f"Tool {name} failed: {e}")
            return f"Tool error: {e}"

        logger.debug(f"Tool {name} returned {len(result or '')} chars")
        return result if isinstance(result, str) else str(result)

    async def close(self) -> None:
        for tool in self._registered_tools.values():
            closer = getattr(tool, "close", None)
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.warning(f"Failed to close tool {tool.name}: {e}")
