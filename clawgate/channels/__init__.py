"""Chat channels module for clawgate."""

from clawgate.channels.base import BaseChannel
from clawgate.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
