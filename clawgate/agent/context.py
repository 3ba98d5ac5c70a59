"""Context builder for assembling the backend system prompt."""

import platform
from datetime import datetime
from pathlib import Path

from clawgate.agent.memory import MemoryStore


class ContextBuilder:
    """
    Builds the system prompt sent with every run.

    Assembles identity, workspace bootstrap files, memory and the current
    conversation into one prompt.
    """

    BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md"]

    def __init__(self, workspace: Path, memory: MemoryStore | None = None, extra_instructions: str = ""):
        self.workspace = workspace
        self.memory = memory or MemoryStore(workspace)
        self.extra_instructions = extra_instructions

    def build_system_prompt(self, channel: str | None = None, chat_id: str | None = None) -> str:
        parts = [self._get_identity()]

        if self.extra_instructions:
            parts.append(self.extra_instructions.strip())

        bootstrap = self._load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)

        memory = self.memory.get_memory_context()
        if memory:
            parts.append(f"# Memory\n\n{memory}")

        parts.append(self._get_dynamic_context(channel, chat_id))
        return "\n\n---\n\n".join(parts)

    def _get_identity(self) -> str:
        workspace_path = str(self.workspace.expanduser().resolve())
        system = platform.system()
        runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"

        return f"""# clawgate 🦀

You are a personal assistant reached through chat apps such as WhatsApp and Telegram.
Replies are delivered as chat messages: keep them short and plain, without headings or tables.

## Runtime
{runtime}

## Workspace
Your workspace is at: {workspace_path}
- Long-term memory: {workspace_path}/MEMORY.md
- Daily notes: {workspace_path}/memory/YYYY-MM-DD.md

Use the `memory` tool to read or record memories and the `schedule` tool to set reminders
or recurring tasks for this chat. Some actions need the user's approval; if one is denied,
say so and suggest an alternative instead of retrying."""

    @staticmethod
    def _get_dynamic_context(channel: str | None, chat_id: str | None) -> str:
        now = datetime.now().astimezone().strftime("%Y-%m-%d %H:%M %Z (%A)")
        parts = [f"Current time: {now}"]
        if channel and chat_id:
            parts.append(f"Channel: {channel}")
            parts.append(f"Chat ID: {chat_id}")
        return "\n".join(parts)

    def _load_bootstrap_files(self) -> str:
        parts = []
        for filename in self.BOOTSTRAP_FILES:
            file_path = self.workspace / filename
            if file_path.exists():
                content = file_path.read_text(encoding="utf-8")
                parts.append(f"## {filename}\n\n{content}")
        return "\n\n".join(parts)
