from .browser import BrowserTool
from .service import Tool, ToolService

__all__ = ["BrowserTool", "Tool", "ToolService"]
