"""Keyed single-slot rendezvous between a waiting flow and the next inbound reply."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger


@dataclass
class _Pending:
    future: asyncio.Future[str | None]
    timer: asyncio.TimerHandle


class PendingReplies:
    """
    Correlates one outstanding question per key with the next reply for that key.

    Each key holds at most one pending entry. Waiting on a key that already
    has an entry supersedes it: the old waiter resolves with None. A reply,
    a timeout, a supersede and a cancel all remove the entry and resolve its
    future within a single event loop step, so a waiter is resolved exactly
    once.
    """

    def __init__(self, name: str = "pending"):
        self.name = name
        self._pending: dict[str, _Pending] = {}

    async def wait(
        self,
        key: str,
        timeout: float,
        on_armed: Callable[[], Awaitable[None]] | None = None,
    ) -> str | None:
        """
        Register a pending entry for key and wait for its reply.

        Args:
            key: Conversation key.
            timeout: Seconds before the entry expires with None.
            on_armed: Optional coroutine run once the entry is registered
                (typically sending the prompt). If it raises, the entry is
                cleared and None is returned.

        Returns:
            The reply text, or None on timeout, supersede or failed prompt.
        """
        self._supersede(key)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str | None] = loop.create_future()
        timer = loop.call_later(timeout, self._expire, key, future)
        self._pending[key] = _Pending(future=future, timer=timer)

        if on_armed is not None:
            try:
                await on_armed()
            except Exception as e:
                logger.error(f"[{self.name}] Failed to deliver prompt for {key}: {e}")
                self._clear(key, future)
                if not future.done():
                    future.set_result(None)

        try:
            return await future
        finally:
            self._clear(key, future)

    def resolve(self, key: str, text: str) -> bool:
        """Resolve the pending entry for key with text. Returns False if none."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if entry.future.done():
            return False
        entry.future.set_result(text)
        return True

    def cancel(self, key: str) -> bool:
        """Resolve the pending entry for key with None. Returns False if none."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(None)
        return True

    def has(self, key: str) -> bool:
        return key in self._pending

    def keys(self) -> list[str]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def _supersede(self, key: str) -> None:
        if self.cancel(key):
            logger.debug(f"[{self.name}] Superseded pending reply for {key}")

    def _expire(self, key: str, future: asyncio.Future[str | None]) -> None:
        entry = self._pending.get(key)
        if entry is None or entry.future is not future:
            return
        del self._pending[key]
        if not future.done():
            logger.info(f"[{self.name}] Timed out waiting for reply on {key}")
            future.set_result(None)

    def _clear(self, key: str, future: asyncio.Future[str | None]) -> None:
        entry = self._pending.get(key)
        if entry is not None and entry.future is future:
            entry.timer.cancel()
            del self._pending[key]
