"""Channel manager: builds the enabled channels and owns their tasks."""

import asyncio
from typing import Any

from loguru import logger

from clawgate.bus.queue import MessageBus
from clawgate.channels.base import BaseChannel
from clawgate.config.schema import Config


class ChannelManager:
    """
    Manages the lifecycle of the enabled chat channels.

    Each channel's start() is long-running and gets a task of its own; a
    channel that fails to start is logged and does not affect the others.
    """

    def __init__(self, config: Config, bus: MessageBus, channels: list[BaseChannel] | None = None):
        self.config = config
        self.bus = bus
        self.channels: dict[str, BaseChannel] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

        if channels is None:
            channels = self._build_channels()
        for channel in channels:
            self.channels[channel.name] = channel

    def _build_channels(self) -> list[BaseChannel]:
        channels: list[BaseChannel] = []
        if self.config.channels.whatsapp.enabled:
            from clawgate.channels.whatsapp import WhatsAppChannel

            channels.append(WhatsAppChannel(self.config.channels.whatsapp, self.bus))
        if self.config.channels.telegram.enabled:
            from clawgate.channels.telegram import TelegramChannel

            channels.append(TelegramChannel(self.config.channels.telegram, self.bus))
        return channels

    def get_channel(self, name: str) -> BaseChannel | None:
        return self.channels.get(name)

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels)

    async def start_all(self) -> None:
        if not self.channels:
            logger.warning("[Channels] No channels enabled")
        for name, channel in self.channels.items():
            logger.info(f"[Channels] Starting {name} channel...")
            task = asyncio.create_task(channel.start(), name=f"channel:{name}")
            task.add_done_callback(lambda t, n=name: self._on_channel_exit(n, t))
            self._tasks[name] = task

    def _on_channel_exit(self, name: str, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Channels] {name} channel stopped with error: {error}")

    async def stop_all(self) -> None:
        for name, channel in self.channels.items():
            try:
                await channel.stop()
            except Exception as e:
                logger.error(f"[Channels] Error stopping {name}: {e}")
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def get_status(self) -> dict[str, Any]:
        return {name: {"connected": channel.is_connected} for name, channel in self.channels.items()}
