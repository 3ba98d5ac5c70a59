"""Slash commands handled by the gateway before a message reaches the agent."""

from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from clawgate.agent.loop import AgentLoop
from clawgate.agent.runner import RunCoordinator
from clawgate.bus.rendezvous import PendingReplies
from clawgate.providers import available_providers
from clawgate.session.manager import SessionRegistry

DEFAULT_SELECTION_TIMEOUT_S = 30.0

Reply = Callable[[str], Awaitable[None]]

HELP_LINES = [
    "📖 *Commands*",
    "",
    "`/new` or `/reset` - Start fresh session",
    "`/status` - Show session status",
    "`/memory` - Show memory summary",
    "`/memory list` - List memory files",
    "`/memory search <query>` - Search memories",
    "`/queue` - Show queue status",
    "`/model` - Switch AI model",
    "`/model 2` - Switch to model by number",
    "`/provider` - Switch provider ({providers})",
    "`/stop` - Stop current operation",
    "`/help` - Show this help",
]


@dataclass
class CommandResult:
    """Outcome of a command. An empty response means nothing is sent."""
    handled: bool
    response: str = ""


def parse_command(text: str) -> tuple[str, str] | None:
    """Split "/word rest" into (word, rest). Returns None for non-commands."""
    trimmed = text.strip()
    if not trimmed.startswith("/"):
        return None
    name, _, args = trimmed[1:].partition(" ")
    return name.lower(), args.strip()


def _clip(text: str, limit: int = 500) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class CommandHandler:
    """
    Interprets slash commands.

    /model and /provider without an argument send a numbered menu and wait
    for the next message in the same conversation. Those waits live in a
    registry of their own so they never collide with tool approvals.
    """

    def __init__(
        self,
        agent: AgentLoop,
        coordinator: RunCoordinator,
        sessions: SessionRegistry,
        selection_timeout_s: float = DEFAULT_SELECTION_TIMEOUT_S,
    ):
        self.agent = agent
        self.coordinator = coordinator
        self.sessions = sessions
        self.selection_timeout_s = selection_timeout_s
        self.selections = PendingReplies("Selection")

    def has_pending(self, conversation: str) -> bool:
        return self.selections.has(conversation)

    def handle_pending_reply(self, conversation: str, text: str) -> bool:
        """Deliver text to a waiting menu. Returns False if none is waiting."""
        return self.selections.resolve(conversation, text.strip())

    async def execute(self, text: str, session_key: str, conversation: str, reply: Reply) -> CommandResult:
        """
        Run the command in text, if any.

        Args:
            text: Raw inbound text.
            session_key: Session the command applies to.
            conversation: Conversation key ("platform:chat_id") for menus.
            reply: Sends a message to the conversation (used for menus).
        """
        parsed = parse_command(text)
        if parsed is None:
            return CommandResult(handled=False)
        command, args = parsed

        if command in ("new", "reset"):
            return self._reset(session_key)
        if command == "status":
            return self._status(session_key)
        if command == "memory":
            return self._memory(args)
        if command == "queue":
            return self._queue()
        if command == "stop":
            return self._stop(session_key)
        if command == "model":
            return await self._model(args, conversation, reply)
        if command == "provider":
            return await self._provider(args, conversation, reply)
        if command == "help":
            return CommandResult(True, "\n".join(HELP_LINES).replace("{providers}", "/".join(available_providers())))
        return CommandResult(handled=False)

    def _reset(self, session_key: str) -> CommandResult:
        self.sessions.reset(session_key)
        return CommandResult(True, "🔄 Session reset. Starting fresh!")

    def _status(self, session_key: str) -> CommandResult:
        session = self.sessions.get(session_key)
        queue = self.coordinator.get_queue_status(session_key)
        stats = self.coordinator.get_global_stats()
        lines = [
            "📊 *Status*",
            "",
            f"*Session:* {':'.join(session_key.split(':')[-2:])}",
            f"*Messages:* {session.message_count if session else 0}",
            f"*Queue:* {queue['pending']} pending{' (processing)' if queue['processing'] else ''}",
            f"*Provider:* {self.agent.provider_name} ({self.agent.provider.get_model() or 'default'})",
            "",
            f"*Global:* {stats['total_processed']} processed, {stats['total_failed']} failed",
        ]
        return CommandResult(True, "\n".join(lines))

    def _memory(self, args: str) -> CommandResult:
        memory = self.agent.memory

        if args == "list":
            files = memory.list_daily_files()
            lines = [
                "📝 *Memory Files*",
                "",
                f"*MEMORY.md:* {'exists' if memory.read_long_term() else 'empty'}",
                "",
                "*Daily logs:*",
                *(f"  • {f}" for f in files[:10]),
            ]
            if len(files) > 10:
                lines.append(f"  ... and {len(files) - 10} more")
            return CommandResult(True, "\n".join(lines))

        if args.startswith("search "):
            query = args[7:].strip()
            results = memory.search(query, max_results=5)
            if not results:
                return CommandResult(True, f'🔍 No results for "{query}"')
            lines = [f'🔍 *Search: "{query}"*', ""]
            for result in results:
                lines.append(f"*{result.file}:*")
                for number, line in result.matches[:2]:
                    lines.append(f"  Line {number}: {line[:100]}...")
            return CommandResult(True, "\n".join(lines))

        long_term = memory.read_long_term()
        today = memory.read_today()
        lines = [
            "🧠 *Memory*",
            "",
            "*Long-term (MEMORY.md):*",
            _clip(long_term) if long_term else "Empty",
            "",
            "*Today:*",
            _clip(today) if today else "No notes yet",
        ]
        return CommandResult(True, "\n".join(lines))

    def _queue(self) -> CommandResult:
        stats = self.coordinator.get_global_stats()
        lines = [
            "📋 *Queue Status*",
            "",
            f"*Pending:* {stats['total_pending']}",
            f"*Active sessions:* {stats['active_sessions']}",
            f"*Total sessions:* {stats['total_sessions']}",
            "",
            f"*Processed:* {stats['total_processed']}",
            f"*Failed:* {stats['total_failed']}",
        ]
        return CommandResult(True, "\n".join(lines))

    def _stop(self, session_key: str) -> CommandResult:
        if self.coordinator.abort(session_key):
            return CommandResult(True, "⏹️ Stopped current operation")
        return CommandResult(True, "⏹️ Nothing to stop")

    async def _select(self, conversation: str, menu: str, reply: Reply) -> str | None:
        return await self.selections.wait(
            conversation,
            self.selection_timeout_s,
            on_armed=lambda: reply(menu),
        )

    async def _model(self, args: str, conversation: str, reply: Reply) -> CommandResult:
        provider = self.agent.provider
        models = provider.get_available_models()
        current = provider.get_model()

        if args:
            match = provider.find_model(args)
            if match is None:
                return CommandResult(True, "Unknown model. Use /model to see options.")
            self.agent.set_model(match.id)
            return CommandResult(True, f"✅ Model set to: {match.label} ({match.id})")

        lines = [f"🤖 *Models* ({self.agent.provider_name})", f"Current: {current or '(default)'}", ""]
        for i, option in enumerate(models, start=1):
            marker = " ←" if option.id == current else ""
            lines.append(f"{i}) {option.label}{marker}")
        lines.extend(["", "Reply with a number to switch."])

        answer = await self._select(conversation, "\n".join(lines), reply)
        if not answer:
            return CommandResult(True)
        if answer.isdigit() and 0 < int(answer) <= len(models):
            chosen = models[int(answer) - 1]
            self.agent.set_model(chosen.id)
            return CommandResult(True, f"✅ Model set to: {chosen.label}")
        return CommandResult(True, "No change.")

    async def _provider(self, args: str, conversation: str, reply: Reply) -> CommandResult:
        available = available_providers()
        current = self.agent.provider_name

        if args:
            target = args.lower()
            if target not in available:
                return CommandResult(True, f"Unknown provider. Available: {', '.join(available)}")
            return await self._switch(target)

        lines = ["🔌 *Providers*", f"Current: {current}", ""]
        for i, name in enumerate(available, start=1):
            marker = " ←" if name == current else ""
            lines.append(f"{i}) {name}{marker}")
        lines.extend(["", "Reply with a number to switch."])

        answer = await self._select(conversation, "\n".join(lines), reply)
        if not answer:
            return CommandResult(True)
        if answer.isdigit() and 0 < int(answer) <= len(available):
            return await self._switch(available[int(answer) - 1])
        return CommandResult(True, "No change.")

    async def _switch(self, target: str) -> CommandResult:
        current = self.agent.provider_name
        if target == current:
            return CommandResult(True, f"Already using {current}.")
        try:
            await self.agent.switch_provider(target)
        except Exception as e:
            logger.error(f"[Commands] Failed to switch provider to {target}: {e}")
            return CommandResult(True, f"Could not switch to {target}: {e}")
        return CommandResult(True, f"✅ Switched to {target}")
