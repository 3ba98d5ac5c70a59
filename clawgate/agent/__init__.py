"""Agent core module for clawgate."""

from clawgate.agent.approval import ApprovalBroker
from clawgate.agent.commands import CommandHandler, CommandResult
from clawgate.agent.context import ContextBuilder
from clawgate.agent.loop import AgentLoop
from clawgate.agent.memory import MemoryStore
from clawgate.agent.runner import Run, RunAborted, RunCoordinator, RunPayload, RunResult

__all__ = [
    "AgentLoop",
    "ApprovalBroker",
    "CommandHandler",
    "CommandResult",
    "ContextBuilder",
    "MemoryStore",
    "Run",
    "RunAborted",
    "RunCoordinator",
    "RunPayload",
    "RunResult",
]
