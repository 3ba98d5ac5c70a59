"""Claude Agent SDK provider implementation."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterator

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    create_sdk_mcp_server,
    tool,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny, StreamEvent
from loguru import logger

from clawgate.bus.events import ImageAttachment
from clawgate.config.schema import ClaudeProviderConfig
from clawgate.providers.base import BaseProvider, CanUseTool, ModelOption, ProviderEvent
from clawgate.session.manager import SessionRegistry

if TYPE_CHECKING:
    from clawgate.agent.tools.base import ToolContext
    from clawgate.agent.tools.registry import ToolRegistry

MCP_SERVER_NAME = "clawgate"


@dataclass
class _StreamState:
    """Per-query bookkeeping while translating SDK messages."""
    turn_streamed: bool = False
    seen_tools: set[str] = field(default_factory=set)
    failed: bool = False
    generation: int | None = None


def build_mcp_server(tools: "ToolRegistry", context: "ToolContext") -> Any:
    """Expose registry tools to the SDK as an in-process MCP server bound to one conversation."""
    sdk_tools = []
    for item in tools.tools():
        async def handler(args: dict[str, Any], _name: str = item.name) -> dict[str, Any]:
            result = await tools.execute(_name, args, context)
            return {"content": [{"type": "text", "text": result}]}

        sdk_tools.append(tool(item.name, item.description, item.parameters)(handler))
    return create_sdk_mcp_server(name=MCP_SERVER_NAME, version="1.0.0", tools=sdk_tools)


class ClaudeProvider(BaseProvider):
    """
    Backend on the Claude Agent SDK.

    The SDK owns conversation state server-side; the session token captured
    from the init message is passed back as `resume` on the next query.
    """

    name = "claude"

    MODELS = [
        ModelOption(id="claude-sonnet-4-5-20250929", label="Sonnet 4.5"),
        ModelOption(id="claude-opus-4-20250514", label="Opus 4"),
        ModelOption(id="claude-haiku-4-5-20251001", label="Haiku 4.5"),
    ]

    def __init__(
        self,
        config: ClaudeProviderConfig,
        sessions: SessionRegistry,
        workspace: Path | None = None,
    ):
        super().__init__(config, sessions, default_model=config.model)
        self.workspace = workspace
        self._clients: dict[str, ClaudeSDKClient] = {}

    def get_available_models(self) -> list[ModelOption]:
        return list(self.MODELS)

    def build_options(
        self,
        session_key: str,
        system_prompt: str | None = None,
        model: str | None = None,
        tools: "ToolRegistry | None" = None,
        tool_context: "ToolContext | None" = None,
        can_use_tool: CanUseTool | None = None,
    ) -> ClaudeAgentOptions:
        """Assemble SDK options for one query."""
        options: dict[str, Any] = {
            "max_turns": self.config.max_turns,
            "permission_mode": self.config.permission_mode,
            "include_partial_messages": True,
        }
        # Tools listed in allowed_tools are pre-approved and never reach can_use_tool.
        if can_use_tool is None:
            options["allowed_tools"] = list(self.config.allowed_tools)
        else:
            options["can_use_tool"] = self._permission_callback(can_use_tool)

        token = self.sessions.get_token(session_key)
        if token:
            options["resume"] = token
        selected = model or self._model
        if selected:
            options["model"] = selected
        if system_prompt:
            options["system_prompt"] = system_prompt
        if self.workspace is not None:
            options["cwd"] = str(self.workspace)
        if tools is not None and len(tools) and tool_context is not None:
            options["mcp_servers"] = {MCP_SERVER_NAME: build_mcp_server(tools, tool_context)}
            if "allowed_tools" in options:
                options["allowed_tools"] += [f"mcp__{MCP_SERVER_NAME}__{name}" for name in tools.tool_names]
        return ClaudeAgentOptions(**options)

    @staticmethod
    def _permission_callback(can_use_tool: CanUseTool):
        async def callback(tool_name: str, tool_input: dict[str, Any], _context: Any):
            decision = await can_use_tool(tool_name, tool_input)
            if decision.allow:
                return PermissionResultAllow(updated_input=decision.updated_input or tool_input)
            return PermissionResultDeny(message=decision.message or "User denied the action.")

        return callback

    async def query(
        self,
        prompt: str,
        session_key: str,
        *,
        image: ImageAttachment | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        tools: "ToolRegistry | None" = None,
        tool_context: "ToolContext | None" = None,
        can_use_tool: CanUseTool | None = None,
    ) -> AsyncIterator[ProviderEvent]:
        options = self.build_options(session_key, system_prompt, model, tools, tool_context, can_use_tool)
        signal = self._begin(session_key)
        state = _StreamState(generation=self.sessions.generation(session_key))
        try:
            async with ClaudeSDKClient(options=options) as client:
                self._clients[session_key] = client
                if image is not None:
                    await client.query(self._image_message(prompt, image))
                else:
                    await client.query(prompt)
                async for message in self._until_aborted(client.receive_response(), signal):
                    for event in self._translate(message, session_key, state):
                        yield event
                    if state.failed:
                        return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if signal.is_set():
                yield ProviderEvent(type="aborted")
                return
            logger.error(f"[claude] Query failed for {session_key}: {e}")
            yield ProviderEvent(type="error", error=str(e))
            return
        finally:
            self._clients.pop(session_key, None)
            self._end(session_key, signal)

        yield ProviderEvent(type="aborted" if signal.is_set() else "done")

    def _translate(self, message: Any, session_key: str, state: _StreamState) -> Iterator[ProviderEvent]:
        """Map one SDK message onto provider events."""
        if isinstance(message, SystemMessage):
            if message.subtype == "init":
                token = (message.data or {}).get("session_id")
                if token:
                    self.sessions.set_token(session_key, token, state.generation)
            return

        if isinstance(message, StreamEvent):
            event = message.event or {}
            if event.get("type") == "message_start":
                state.turn_streamed = False
            elif event.get("type") == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    state.turn_streamed = True
                    yield ProviderEvent(type="text_delta", text=delta["text"])
                elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                    yield ProviderEvent(type="reasoning_delta", text=delta["thinking"])
            return

        if isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock) and not state.turn_streamed:
                    yield ProviderEvent(type="text_delta", text=block.text)
                elif isinstance(block, ThinkingBlock) and not state.turn_streamed:
                    yield ProviderEvent(type="reasoning_delta", text=block.thinking)
                elif isinstance(block, ToolUseBlock) and block.id not in state.seen_tools:
                    state.seen_tools.add(block.id)
                    yield ProviderEvent(
                        type="tool_use",
                        tool_name=block.name,
                        tool_input=dict(block.input or {}),
                        tool_id=block.id,
                    )
            state.turn_streamed = False
            return

        if isinstance(message, UserMessage) and isinstance(message.content, list):
            for block in message.content:
                if isinstance(block, ToolResultBlock):
                    yield ProviderEvent(type="tool_result", tool_id=block.tool_use_id, result=block.content)
            return

        if isinstance(message, ResultMessage):
            if message.is_error:
                state.failed = True
                yield ProviderEvent(type="error", error=message.result or f"Claude returned {message.subtype}")

    @staticmethod
    async def _image_message(prompt: str, image: ImageAttachment) -> AsyncIterator[dict[str, Any]]:
        yield {
            "type": "user",
            "message": {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": image.media_type,
                            "data": image.to_base64(),
                        },
                    },
                    {"type": "text", "text": prompt or "What's in this image?"},
                ],
            },
            "parent_tool_use_id": None,
        }

    def _on_abort(self, session_key: str) -> None:
        client = self._clients.get(session_key)
        if client is not None:
            self._spawn(self._interrupt(client, session_key))

    async def _interrupt(self, client: ClaudeSDKClient, session_key: str) -> None:
        try:
            await client.interrupt()
        except Exception as e:
            logger.debug(f"[claude] Interrupt failed for {session_key}: {e}")
