"""Tool registry for dynamic tool management."""

import re
import time
from typing import Any, Awaitable, Callable

from loguru import logger

from clawgate.agent.tools.base import Tool, ToolContext
from clawgate.providers.base import CanUseTool


class ToolRegistry:
    """
    Registry for agent tools.

    Allows dynamic registration and execution of tools. Execution never
    raises: failures come back as "Error: ..." strings the backend can read.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._on_tool_event: Callable[[dict[str, Any]], Awaitable[None]] | None = None

    def set_tool_event_callback(self, callback: Callable[[dict[str, Any]], Awaitable[None]] | None) -> None:
        """Set callback for tool start/end events."""
        self._on_tool_event = callback

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        context: ToolContext,
        can_use_tool: CanUseTool | None = None,
    ) -> str:
        """
        Execute a tool by name with given parameters.

        Args:
            name: Tool name.
            params: Tool parameters.
            context: Conversation the call belongs to.
            can_use_tool: Optional permission callback consulted before running.

        Returns:
            Tool execution result as string.
        """
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Tool '{name}' not found"

        errors = tool.validate_params(params)
        if errors:
            return f"Error: Invalid parameters for tool '{name}': " + "; ".join(errors)

        if can_use_tool is not None:
            decision = await can_use_tool(name, params)
            if not decision.allow:
                reason = decision.message or "denied"
                return f"Error: Tool '{name}' was not allowed: {reason}"
            if decision.updated_input is not None:
                params = decision.updated_input

        await self._emit("tool_start", name, params, context, ok=None, result=None, duration_ms=0)

        start = time.monotonic()
        ok = True
        result = ""
        try:
            result = await tool.execute(context, **params)
            return result
        except Exception as e:
            ok = False
            result = f"Error executing {name}: {str(e)}"
            logger.warning(f"Tool {name} failed: {e}")
            return result
        finally:
            duration = (time.monotonic() - start) * 1000
            await self._emit("tool_end", name, params, context, ok=ok, result=result, duration_ms=duration)

    @classmethod
    def _sanitize(cls, value: Any, max_str_len: int = 500) -> Any:
        """Mask secrets and trim long strings before values leave the process."""
        sensitive_key_re = re.compile(
            r"(token|secret|password|passwd|api[_-]?key|access[_-]?key|private[_-]?key|authorization|bearer)",
            re.IGNORECASE,
        )
        if isinstance(value, bytes):
            return "<redacted:binary-bytes>"
        if isinstance(value, dict):
            out: dict[str, Any] = {}
            for k, v in value.items():
                key = str(k)
                if sensitive_key_re.search(key):
                    out[key] = "<redacted:sensitive>"
                else:
                    out[key] = cls._sanitize(v, max_str_len=max_str_len)
            return out
        if isinstance(value, list):
            return [cls._sanitize(v, max_str_len=max_str_len) for v in value]
        if isinstance(value, str) and len(value) > max_str_len:
            return value[:max_str_len] + f"... (truncated, {len(value) - max_str_len} more chars)"
        return value

    async def _emit(
        self,
        event_type: str,
        tool_name: str,
        params: dict[str, Any],
        context: ToolContext,
        ok: bool | None,
        result: Any,
        duration_ms: float,
    ) -> None:
        if not self._on_tool_event:
            return
        payload: dict[str, Any] = {
            "type": event_type,
            "kind": "tool",
            "run_id": context.run_id,
            "session_key": context.session_key,
            "channel": context.channel,
            "chat_id": context.chat_id,
            "tool_name": tool_name,
            "params": self._sanitize(params, max_str_len=500),
            "ok": ok,
            "result": self._sanitize(result, max_str_len=1200),
            "duration_ms": round(duration_ms, 1),
            "ts": time.time(),
        }
        try:
            await self._on_tool_event(payload)
        except Exception as e:
            logger.debug(f"Tool event listener failed: {e}")

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
