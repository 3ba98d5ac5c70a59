"""Base channel interface for chat platforms."""

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from clawgate.bus.events import ImageAttachment, InboundMessage
from clawgate.bus.queue import MessageBus
from clawgate.config.schema import ChannelAccessConfig


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel (WhatsApp, Telegram) implements this interface to feed
    the gateway through the message bus. Sending text is required; typing
    indicators and reactions are best-effort and default to no-ops.
    """

    name: str = "base"

    def __init__(self, config: ChannelAccessConfig, bus: MessageBus):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration, including its allowlists.
            bus: The message bus for communication.
        """
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """
        Start the channel and begin listening for messages.

        This should be a long-running async task that:
        1. Connects to the chat platform
        2. Listens for incoming messages
        3. Forwards messages to the bus via _handle_message()
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send_message(self, chat_id: str, text: str) -> None:
        """Send a text message to a chat."""
        pass

    async def send_typing(self, chat_id: str) -> None:
        pass

    async def stop_typing(self, chat_id: str) -> None:
        pass

    async def react(self, chat_id: str, message_id: str, emoji: str, raw: Any = None) -> None:
        pass

    @property
    def is_connected(self) -> bool:
        return self._running

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running

    def _id_variants(self, value: str) -> set[str]:
        """Forms of an id that may appear in an allowlist."""
        text = str(value)
        variants = {text}
        if "|" in text:
            variants.update(part for part in text.split("|") if part)
        return variants

    def _in_list(self, entries: list[str], *ids: str) -> bool:
        if "*" in entries:
            return True
        allowed = set(entries)
        return any(self._id_variants(i) & allowed for i in ids if i)

    def is_allowed(self, sender_id: str, chat_id: str, is_group: bool = False, mentioned: bool = False) -> bool:
        """
        Check if a message may reach the agent.

        DMs need the chat or sender in allowed_dms. Group messages need the
        group in allowed_groups and, with respond_to_mentions_only, a mention
        of the bot. An empty list allows nobody; "*" allows everybody.
        """
        if not is_group:
            return self._in_list(self.config.allowed_dms, chat_id, sender_id)
        if not self._in_list(self.config.allowed_groups, chat_id):
            return False
        return mentioned or not self.config.respond_to_mentions_only

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        is_group: bool = False,
        mentioned: bool = False,
        image: ImageAttachment | None = None,
        message_id: str | None = None,
        raw: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """
        Handle an incoming message from the chat platform.

        This method checks the allowlists and forwards to the bus. Rejected
        messages are dropped without a reply.
        """
        if not self.is_allowed(sender_id, chat_id, is_group=is_group, mentioned=mentioned):
            logger.debug(f"[{self.name}] Ignoring message from {sender_id} in {chat_id}")
            return

        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            is_group=is_group,
            image=image,
            message_id=str(message_id) if message_id is not None else None,
            raw=raw,
            metadata=dict(metadata or {}),
        )
        await self.bus.publish_inbound(msg)
