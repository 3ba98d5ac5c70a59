"""Approval broker: routes the next inbound reply on a conversation to a waiting tool call."""

from typing import Awaitable, Callable

from loguru import logger

from clawgate.bus.rendezvous import PendingReplies

DEFAULT_APPROVAL_TIMEOUT_S = 120.0

APPROVE_WORDS = frozenset({"y", "yes", "approve", "approved"})


def is_approval(reply: str | None) -> bool:
    """Whether a reply grants a tool approval. No reply is a denial."""
    if reply is None:
        return False
    return reply.strip().lower() in APPROVE_WORDS


class ApprovalBroker:
    """
    Owns the pending-approval slot of every conversation.

    The broker only correlates: it sends the prompt, waits for the next
    message on the conversation (or the deadline) and hands back the raw
    reply. What the reply means is up to the caller.
    """

    def __init__(self, timeout_s: float = DEFAULT_APPROVAL_TIMEOUT_S):
        self.timeout_s = timeout_s
        self._pending = PendingReplies("approval")

    async def request(
        self,
        conversation: str,
        prompt: str,
        send: Callable[[str], Awaitable[None]],
        timeout: float | None = None,
    ) -> str | None:
        """
        Ask a question on a conversation and wait for the answer.

        Any request already pending on the conversation resolves with None
        first.

        Returns:
            The reply text, or None on timeout, supersede or if the prompt
            could not be delivered.
        """
        logger.info(f"[Approval] Waiting for reply on {conversation}")
        return await self._pending.wait(
            conversation,
            timeout if timeout is not None else self.timeout_s,
            on_armed=lambda: send(prompt),
        )

    def resolve(self, conversation: str, text: str) -> bool:
        """Hand an inbound message to the pending request. Returns False if none is pending."""
        resolved = self._pending.resolve(conversation, text)
        if resolved:
            logger.info(f"[Approval] Resolved pending approval on {conversation}")
        return resolved

    def has_pending(self, conversation: str) -> bool:
        return self._pending.has(conversation)

    def cancel(self, conversation: str) -> bool:
        return self._pending.cancel(conversation)
