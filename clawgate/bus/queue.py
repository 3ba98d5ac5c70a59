"""Async message bus that decouples chat channels from the gateway core."""

import asyncio
from typing import Any

from loguru import logger

from clawgate.bus.events import InboundMessage, RunEvent


class MessageBus:
    """
    Async message bus between channels and the gateway.

    Channels push messages to the inbound queue and the gateway consumes
    them. Run lifecycle and agent activity events fan out to bounded
    listener queues; a slow listener loses its oldest events instead of
    blocking the emitter.
    """

    def __init__(self, listener_maxsize: int = 200):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._listener_maxsize = listener_maxsize
        self._run_listeners: list[asyncio.Queue[RunEvent]] = []
        self._activity_listeners: list[asyncio.Queue[dict[str, Any]]] = []

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """Publish a message from a channel to the gateway."""
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """Consume the next inbound message (blocks until available)."""
        return await self.inbound.get()

    def register_run_listener(self) -> asyncio.Queue[RunEvent]:
        """Register a listener for run lifecycle events."""
        q: asyncio.Queue[RunEvent] = asyncio.Queue(maxsize=self._listener_maxsize)
        self._run_listeners.append(q)
        return q

    def unregister_run_listener(self, q: asyncio.Queue[RunEvent]) -> None:
        """Unregister a run event listener."""
        if q in self._run_listeners:
            self._run_listeners.remove(q)

    def emit_run_event(self, event: RunEvent) -> None:
        """Publish a run event to all listeners without suspending the caller."""
        self._fan_out(self._run_listeners, event)

    def register_activity_listener(self) -> asyncio.Queue[dict[str, Any]]:
        """Register a listener for agent activity (tool use, approvals)."""
        q: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._listener_maxsize)
        self._activity_listeners.append(q)
        return q

    def unregister_activity_listener(self, q: asyncio.Queue[dict[str, Any]]) -> None:
        """Unregister an activity listener."""
        if q in self._activity_listeners:
            self._activity_listeners.remove(q)

    async def publish_activity(self, event: dict[str, Any]) -> None:
        """Publish an agent activity event to all listeners."""
        self._fan_out(self._activity_listeners, event)

    @staticmethod
    def _fan_out(listeners: list[asyncio.Queue], event: Any) -> None:
        for q in list(listeners):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                try:
                    _ = q.get_nowait()
                    q.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    logger.debug("Dropped event for saturated listener")

    @property
    def inbound_size(self) -> int:
        """Number of pending inbound messages."""
        return self.inbound.qsize()
