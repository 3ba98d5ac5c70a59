"""Event types passed between channels, the gateway and monitoring listeners."""

import base64
import time
from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass
class ImageAttachment:
    """An image received with an inbound message."""

    data: bytes
    media_type: str = "image/jpeg"

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def size_kb(self) -> int:
        return round(len(self.data) / 1024)


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # telegram, whatsapp, ...
    sender_id: str  # User identifier
    chat_id: str  # Chat/conversation identifier
    content: str  # Message text
    is_group: bool = False
    image: ImageAttachment | None = None
    message_id: str | None = None
    raw: Any = None  # Adapter-specific reference (reactions only)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def conversation_key(self) -> str:
        """Key used to correlate replies with pending approvals and selections."""
        return f"{self.channel}:{self.chat_id}"


RunEventType = Literal["queued", "processing", "completed", "failed", "aborted"]


@dataclass
class RunEvent:
    """Lifecycle event emitted by the run coordinator for monitoring."""

    type: RunEventType
    run_id: str
    session_key: str
    ts: float = field(default_factory=time.time)
    position: int | None = None
    queue_length: int | None = None
    wait_ms: float | None = None
    remaining: int | None = None
    duration_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "kind": "run",
            "run_id": self.run_id,
            "session_key": self.session_key,
            "ts": self.ts,
        }
        for key in ("position", "queue_length", "wait_ms", "remaining", "duration_ms", "error"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data
