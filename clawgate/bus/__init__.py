"""Message bus module for clawgate."""

from clawgate.bus.events import ImageAttachment, InboundMessage, RunEvent
from clawgate.bus.queue import MessageBus
from clawgate.bus.rendezvous import PendingReplies

__all__ = ["MessageBus", "InboundMessage", "ImageAttachment", "RunEvent", "PendingReplies"]
