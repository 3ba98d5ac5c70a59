"""Agent tools module."""

from clawgate.agent.tools.base import Tool, ToolContext
from clawgate.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolContext", "ToolRegistry"]
