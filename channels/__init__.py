"""
Chat-platform connectors.
"""
from .base import AccessDecision, BaseChannel, ChannelError, ChannelType, DMPolicy, split_text
from .discord_channel import DiscordChannel
from .feishu_channel import FeishuChannel
from .registry import ChannelRegistry

__all__ = [
    "AccessDecision",
    "BaseChannel",
    "ChannelError",
    "ChannelType",
    "DMPolicy",
    "DiscordChannel",
    "FeishuChannel",
    "ChannelRegistry",
    "split_text",
]
