"""Memory tool: read, record and search persistent notes."""

from typing import Any

from clawgate.agent.memory import MemoryStore
from clawgate.agent.tools.base import Tool, ToolContext


class MemoryTool(Tool):
    """Read and write MEMORY.md and the daily notes."""

    def __init__(self, memory: MemoryStore):
        self._memory = memory

    @property
    def name(self) -> str:
        return "memory"

    @property
    def description(self) -> str:
        return (
            "Persistent memory. Actions: read (long-term memory and today's notes), "
            "append (add a note to today's file), remember (add a lasting fact to MEMORY.md), "
            "search (keyword search across all memory files)."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["read", "append", "remember", "search"],
                    "description": "Action to perform",
                },
                "text": {
                    "type": "string",
                    "description": "Note or fact to store (for append/remember)",
                },
                "query": {
                    "type": "string",
                    "description": "Search query (for search)",
                },
                "max_results": {
                    "type": "integer",
                    "minimum": 1,
                    "maximum": 20,
                    "description": "Maximum number of files to return (default: 5)",
                },
            },
            "required": ["action"],
        }

    async def execute(
        self,
        context: ToolContext,
        action: str,
        text: str = "",
        query: str = "",
        max_results: int = 5,
        **kwargs: Any,
    ) -> str:
        if action == "read":
            long_term = self._memory.read_long_term().strip() or "(empty)"
            today = self._memory.read_today().strip() or "(no notes yet)"
            return f"MEMORY.md:\n{long_term}\n\nToday:\n{today}"
        if action in ("append", "remember"):
            if not text.strip():
                return f"Error: text is required for {action}"
            path = self._memory.append_today(text) if action == "append" else self._memory.remember(text)
            return f"Saved to {path.name}"
        if action == "search":
            if not query.strip():
                return "Error: query is required for search"
            results = self._memory.search(query, max_results=max_results)
            if not results:
                return f'No results for "{query}"'
            lines = []
            for result in results:
                lines.append(f"{result.file} (score {result.score:.2f}):")
                for number, line in result.matches[:5]:
                    lines.append(f"  {number}: {line[:200]}")
            return "\n".join(lines)
        return f"Unknown action: {action}"
