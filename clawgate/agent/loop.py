"""Agent loop: executes runs against the active backend provider."""

import json
from typing import Any, Awaitable, Callable

from loguru import logger

from clawgate.agent.approval import ApprovalBroker, is_approval
from clawgate.agent.context import ContextBuilder
from clawgate.agent.memory import MemoryStore
from clawgate.agent.runner import Run, RunAborted
from clawgate.agent.tools.base import ToolContext
from clawgate.agent.tools.cron import ScheduleTool
from clawgate.agent.tools.memory import MemoryTool
from clawgate.agent.tools.registry import ToolRegistry
from clawgate.bus.queue import MessageBus
from clawgate.config.schema import Config
from clawgate.config.settings import SettingsStore
from clawgate.cron.service import CronService
from clawgate.providers import get_provider
from clawgate.providers.base import BaseProvider, CanUseTool, ProviderError, ToolDecision
from clawgate.session.manager import SessionRegistry

SendFn = Callable[[str, str, str], Awaitable[None]]  # (channel, chat_id, text)

QUESTION_TOOL = "AskUserQuestion"


class AgentLoop:
    """
    The agent loop turns a run into a backend query.

    It:
    1. Builds the system prompt (identity, memory, conversation)
    2. Streams the provider's events and collects the reply text
    3. Decides tool permissions, asking the user through the approval broker
    4. Owns provider and model selection
    """

    def __init__(
        self,
        config: Config,
        sessions: SessionRegistry,
        bus: MessageBus,
        approvals: ApprovalBroker,
        cron: CronService | None = None,
        settings: SettingsStore | None = None,
        send_message: SendFn | None = None,
        provider: BaseProvider | None = None,
    ):
        self.config = config
        self.sessions = sessions
        self.bus = bus
        self.approvals = approvals
        self.settings = settings
        self.send_message = send_message
        self.workspace = config.workspace_path
        self.memory = MemoryStore(self.workspace)
        self.context = ContextBuilder(self.workspace, self.memory, config.agent.system_prompt)

        self.tools = ToolRegistry()
        self.tools.register(MemoryTool(self.memory))
        if cron is not None:
            self.tools.register(ScheduleTool(cron))
        self.tools.set_tool_event_callback(bus.publish_activity)

        if provider is None:
            name = (settings.get_provider() if settings else None) or config.agent.provider
            provider = self._build_provider(name)
        self.provider = provider

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def _build_provider(self, name: str) -> BaseProvider:
        provider = get_provider(name, self.config, self.sessions)
        saved = self.settings.get_model(provider.name) if self.settings else None
        if saved:
            provider.set_model(saved)
        return provider

    async def initialize(self) -> None:
        await self.provider.initialize()

    async def close(self) -> None:
        await self.provider.cleanup()

    async def execute(self, run: Run) -> str:
        """
        Execute one run and return the reply text.

        Raises:
            ProviderError: The backend reported an error.
            RunAborted: The backend stream ended in an abort.
        """
        payload = run.payload
        self.sessions.record_message(run.session_key)
        context = ToolContext(
            channel=payload.channel,
            chat_id=payload.chat_id,
            session_key=run.session_key,
            run_id=run.run_id,
        )
        provider = self.provider
        preview = payload.text[:80] + "..." if len(payload.text) > 80 else payload.text
        logger.info(f"[Agent] Run {run.run_id} on {provider.name} for {run.session_key}: {preview}")

        parts: list[str] = []
        stream = provider.query(
            payload.text,
            run.session_key,
            image=payload.image,
            system_prompt=self.context.build_system_prompt(payload.channel, payload.chat_id),
            tools=self.tools,
            tool_context=context,
            can_use_tool=self._permission_callback(context),
        )
        async for event in stream:
            if event.type == "text_delta":
                parts.append(event.text)
            elif event.type == "tool_use":
                logger.info(f"[Agent] 🔧 Using tool: {event.tool_name}")
                await self.bus.publish_activity({
                    "type": "tool_use",
                    "kind": "agent",
                    "run_id": run.run_id,
                    "session_key": run.session_key,
                    "tool_name": event.tool_name,
                    "tool_id": event.tool_id,
                })
            elif event.type == "error":
                raise ProviderError(event.error or "Backend error")
            elif event.type == "aborted":
                raise RunAborted(run.run_id)
            elif event.type == "done":
                break
        return "".join(parts).strip()

    def abort(self, session_key: str) -> bool:
        return self.provider.abort(session_key)

    async def switch_provider(self, name: str) -> BaseProvider:
        """
        Replace the active provider.

        Backend tokens of every session belong to the old backend and are
        cleared; the choice is persisted in the settings store.
        """
        new = self._build_provider(name)
        old, self.provider = self.provider, new
        cleared = self.sessions.clear_tokens()
        if self.settings:
            self.settings.set_provider(new.name)
        logger.info(f"[Agent] Switched provider {old.name} -> {new.name} ({cleared} session token(s) cleared)")
        try:
            await old.cleanup()
        except Exception as e:
            logger.warning(f"[Agent] Cleanup of {old.name} failed: {e}")
        return new

    def set_model(self, model_id: str) -> None:
        self.provider.set_model(model_id)
        if self.settings:
            self.settings.set_model(self.provider.name, model_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def _permission_callback(self, context: ToolContext) -> CanUseTool:
        async def can_use_tool(tool_name: str, tool_input: dict[str, Any]) -> ToolDecision:
            if tool_name == QUESTION_TOOL:
                return await self._ask_questions(context, tool_input)

            mode = self.config.agent.approvals.mode_for(tool_name)
            if mode == "always_allow":
                return ToolDecision(allow=True)
            if mode == "always_deny":
                return ToolDecision(allow=False, message=f"{tool_name} is not allowed by policy.")

            reply = await self._ask(context, self._approval_prompt(tool_name, tool_input))
            if is_approval(reply):
                logger.info(f"[Agent] ✅ {tool_name} approved on {context.channel}:{context.chat_id}")
                return ToolDecision(allow=True)
            if reply is None:
                return ToolDecision(allow=False, message="User did not respond. The action was not approved.")
            return ToolDecision(allow=False, message=f"User denied the action: {reply}")

        return can_use_tool

    async def _ask(self, context: ToolContext, prompt: str) -> str | None:
        if self.send_message is None or not context.channel or not context.chat_id:
            logger.warning(f"[Agent] Cannot ask for approval in run {context.run_id}: no chat to ask")
            return None
        send = self.send_message

        async def deliver(text: str) -> None:
            await send(context.channel, context.chat_id, text)

        return await self.approvals.request(
            f"{context.channel}:{context.chat_id}",
            prompt,
            deliver,
            timeout=self.config.agent.approval_timeout_s,
        )

    async def _ask_questions(self, context: ToolContext, tool_input: dict[str, Any]) -> ToolDecision:
        answers: dict[str, str] = {}
        for question in tool_input.get("questions") or []:
            text = str(question.get("question") or "")
            options = [o for o in question.get("options") or [] if isinstance(o, dict)]
            reply = await self._ask(context, self._question_prompt(text, options))
            if reply is None:
                return ToolDecision(allow=False, message="User did not answer the question.")
            answers[text] = self._interpret_answer(reply, options)
        return ToolDecision(allow=True, updated_input={**tool_input, "answers": answers})

    @staticmethod
    def _interpret_answer(reply: str, options: list[dict[str, Any]]) -> str:
        """A number picks the matching option label; anything else is a free-text answer."""
        reply = reply.strip()
        if reply.isdigit():
            idx = int(reply) - 1
            if 0 <= idx < len(options):
                return str(options[idx].get("label") or reply)
        return reply

    @staticmethod
    def _question_prompt(question: str, options: list[dict[str, Any]]) -> str:
        lines = [f"❓ {question}"]
        if options:
            lines.append("")
            for i, option in enumerate(options, start=1):
                desc = option.get("description")
                lines.append(f"{i}) {option.get('label', '')}" + (f" - {desc}" if desc else ""))
            lines.extend(["", "Reply with a number or type your answer."])
        return "\n".join(lines)

    @staticmethod
    def _approval_prompt(tool_name: str, tool_input: dict[str, Any]) -> str:
        if tool_input.get("command"):
            detail = f"Command: {tool_input['command']}"
        elif tool_input.get("file_path"):
            detail = f"File: {tool_input['file_path']}"
        else:
            detail = f"Input: {json.dumps(tool_input, ensure_ascii=False, default=str)}"
        if len(detail) > 300:
            detail = detail[:300] + "..."
        return (
            f"🔐 *Approval needed*\n\n"
            f"Tool: {tool_name}\n{detail}\n\n"
            "Reply *yes* to allow, anything else to deny."
        )
