"""Base backend provider interface."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Literal, TypeVar

from loguru import logger

from clawgate.bus.events import ImageAttachment
from clawgate.session.manager import SessionRegistry

if TYPE_CHECKING:
    from clawgate.agent.tools.base import ToolContext
    from clawgate.agent.tools.registry import ToolRegistry

T = TypeVar("T")

ProviderEventType = Literal[
    "text_delta",
    "reasoning_delta",
    "tool_use",
    "tool_result",
    "error",
    "aborted",
    "done",
]


class ProviderError(Exception):
    """A backend reported a failure for the current run."""


class ProviderUnavailableError(ProviderError):
    """The backend could not be reached or started."""


@dataclass
class ProviderEvent:
    """One normalized event from a backend stream."""
    type: ProviderEventType
    text: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_id: str = ""
    result: Any = None
    error: str | None = None


@dataclass
class ModelOption:
    """A selectable model."""
    id: str
    label: str


@dataclass
class ToolDecision:
    """Answer to a backend's request to run a tool."""
    allow: bool
    message: str = ""
    updated_input: dict[str, Any] | None = None


CanUseTool = Callable[[str, dict[str, Any]], Awaitable[ToolDecision]]


class BaseProvider(ABC):
    """
    Abstract base class for conversational backends.

    Implementations translate their native stream into ProviderEvents and
    keep conversation affinity through the SessionRegistry token slot, so
    a session resumes the same backend context until its token is cleared.
    """

    name = "base"

    def __init__(self, config: Any, sessions: SessionRegistry, default_model: str | None = None):
        self.config = config
        self.sessions = sessions
        self._model = default_model
        self._active: dict[str, asyncio.Event] = {}
        self._background: set[asyncio.Task[Any]] = set()

    @abstractmethod
    def get_available_models(self) -> list[ModelOption]:
        """Models offered in the /model menu."""
        pass

    def get_model(self) -> str:
        if self._model:
            return self._model
        models = self.get_available_models()
        return models[0].id if models else ""

    def set_model(self, model_id: str) -> None:
        self._model = model_id
        logger.info(f"[{self.name}] Model set to {model_id}")

    def find_model(self, query: str) -> ModelOption | None:
        """Match a model by menu number, id or label fragment."""
        models = self.get_available_models()
        query = query.strip()
        if query.isdigit():
            idx = int(query) - 1
            return models[idx] if 0 <= idx < len(models) else None
        needle = query.lower()
        for option in models:
            if needle in option.id.lower() or needle in option.label.lower():
                return option
        return None

    @abstractmethod
    def query(
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
        """
        Run one prompt against the backend.

        Returns a fresh, finite stream that ends with exactly one `done` or
        `aborted` event, or with an `error` event.
        """
        pass

    def abort(self, session_key: str) -> bool:
        """Signal the in-flight query for a session. Returns False if none is active."""
        signal = self._active.get(session_key)
        if signal is None or signal.is_set():
            return False
        signal.set()
        self._on_abort(session_key)
        logger.info(f"[{self.name}] Abort requested for {session_key}")
        return True

    def is_active(self, session_key: str) -> bool:
        return session_key in self._active

    async def initialize(self) -> None:
        """Prepare the backend before the first message."""

    async def cleanup(self) -> None:
        """Release backend resources."""
        for signal in self._active.values():
            signal.set()

    def _on_abort(self, session_key: str) -> None:
        """Backend-specific cancellation hook."""

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        """Run a fire-and-forget backend call, holding a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _begin(self, session_key: str) -> asyncio.Event:
        signal = asyncio.Event()
        self._active[session_key] = signal
        return signal

    def _end(self, session_key: str, signal: asyncio.Event) -> None:
        if self._active.get(session_key) is signal:
            del self._active[session_key]

    @staticmethod
    async def _until_aborted(stream: AsyncIterator[T], signal: asyncio.Event) -> AsyncIterator[T]:
        """Iterate a stream, stopping early once the abort signal is set."""
        iterator = stream.__aiter__()
        aborted = asyncio.ensure_future(signal.wait())
        try:
            while not signal.is_set():
                step = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait({step, aborted}, return_when=asyncio.FIRST_COMPLETED)
                if step not in done:
                    step.cancel()
                    await asyncio.gather(step, return_exceptions=True)
                    return
                try:
                    item = step.result()
                except StopAsyncIteration:
                    return
                yield item
        finally:
            aborted.cancel()
