"""
Agent layer: model backends, tools, skills and the conversation runner.
"""
from config import PincerConfig
from gateway.agent_runner import AgentRunner, StubAgentRunner
from gateway.session_store import SessionStore

from .models import create_backend
from .runner import MAX_ITERATIONS, ConversationRunner
from .skills import SkillsLoader
from .tools import BrowserTool, ToolService


def build_agent_runner(config: PincerConfig, sessions: SessionStore) -> AgentRunner:
    """Wire the runner described by ``config``; stub when no API key exists."""
    agent_cfg = config.agent
    if not agent_cfg.api_keys.has_any():
        return StubAgentRunner(sessions)

    tools = ToolService()
    if agent_cfg.browser_enabled:
        tools.register_tool(BrowserTool(headless=agent_cfg.browser_headless))

    extra_dirs = [agent_cfg.skills_dir] if agent_cfg.skills_dir else None
    return ConversationRunner(
        sessions=sessions,
        backend=create_backend(agent_cfg.model, agent_cfg.api_keys),
        model=agent_cfg.model,
        max_tokens=agent_cfg.max_tokens,
        tools=tools,
        skills=SkillsLoader(extra_dirs),
    )


__all__ = [
    "MAX_ITERATIONS",
    "ConversationRunner",
    "SkillsLoader",
    "ToolService",
    "build_agent_runner",
]
