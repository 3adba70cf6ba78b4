"""
Channel registry - owns every connector instance.
"""
from loguru import logger
from typing import Dict, List, Optional

from fastapi import FastAPI

from .base import BaseChannel


class ChannelRegistry:

    def __init__(self):
        self._channels: Dict[str, BaseChannel] = {}

    def register(self, channel: BaseChannel) -> None:
        channel_name = channel.channel_name
        if channel_name in self._channels:
            logger.warning(f"Channel {channel_name} already registered, replacing...")
        self._channels[channel_name] = channel
        logger.info(f"Registered channel: {channel_name} ({channel.channel_type.value})")

    def unregister(self, channel_name: str) -> bool:
        if self._channels.pop(channel_name, None) is None:
            logger.warning(f"Channel {channel_name} not found")
            return False
        logger.info(f"Unregistered channel: {channel_name}")
        return True

    def get(self, channel_name: str) -> Optional[BaseChannel]:
        return self._channels.get(channel_name)

    def list_channels(self) -> List[str]:
        return list(self._channels.keys())

    def mount_all(self, app: FastAPI) -> None:
        for channel in self._channels.values():
            if channel.enabled:
                channel.mount(app)

    async def start_all(self) -> Dict[str, bool]:
        results = {}
        for name, channel in self._channels.items():
            results[name] = await channel.start()
        return results

    async def stop_all(self) -> Dict[str, bool]:
        results = {}
        for name, channel in self._channels.items():
            results[name] = await channel.stop()
        return results

    def get_status_all(self) -> Dict[str, Dict]:
        return {
            name: channel.get_status()
            for name, channel in self._channels.items()
        }
