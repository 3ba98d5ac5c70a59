"""Session registry: per-conversation state keyed by agent, platform and chat."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger


@dataclass
class Session:
    """
    State for one conversation.

    The backend token is opaque and assigned by the active provider; it is
    what lets the backend resume the conversation on the next run.
    """

    key: str  # agent:platform:chat_id
    agent_id: str = ""
    platform: str = ""
    chat_id: str = ""
    backend_token: str | None = None
    message_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_active_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def short_key(self) -> str:
        """platform:chat_id, for display."""
        return f"{self.platform}:{self.chat_id}" if self.platform else self.key

    def touch(self) -> None:
        self.last_active_at = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "agent_id": self.agent_id,
            "platform": self.platform,
            "chat_id": self.chat_id,
            "has_backend_token": bool(self.backend_token),
            "message_count": self.message_count,
            "created_at": self.created_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
        }


class SessionRegistry:
    """
    In-memory store of conversation sessions.

    Sessions are created lazily and live for the process lifetime unless
    reset. Other components address sessions by key and go through the
    registry for every read or write.

    Every reset or token sweep bumps the session's generation. A provider
    that captured the generation when its run started cannot write a token
    back after the conversation was reset underneath it.
    """

    def __init__(self, agent_id: str = "clawgate"):
        self.agent_id = agent_id
        self._sessions: dict[str, Session] = {}
        self._resets: dict[str, int] = {}
        self._epoch = 0

    @staticmethod
    def make_key(agent_id: str, platform: str, chat_id: str) -> str:
        return f"{agent_id}:{platform}:{chat_id}"

    def key_for(self, platform: str, chat_id: str) -> str:
        """Session key for a conversation under this registry's agent."""
        return self.make_key(self.agent_id, platform, chat_id)

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def get_or_create(self, key: str) -> Session:
        """Get an existing session or create a new one."""
        session = self._sessions.get(key)
        if session is None:
            parts = key.split(":", 2)
            if len(parts) == 3:
                agent_id, platform, chat_id = parts
            else:
                agent_id, platform, chat_id = self.agent_id, "", key
            session = Session(key=key, agent_id=agent_id, platform=platform, chat_id=chat_id)
            self._sessions[key] = session
            logger.debug(f"Created session {key}")
        return session

    def record_message(self, key: str) -> Session:
        """Count a user turn on the session and mark it active."""
        session = self.get_or_create(key)
        session.message_count += 1
        session.touch()
        return session

    def reset(self, key: str) -> bool:
        """Forget a session entirely. Returns False if it did not exist."""
        removed = self._sessions.pop(key, None)
        self._resets[key] = self._resets.get(key, 0) + 1
        if removed is not None:
            logger.info(f"Reset session {key}")
        return removed is not None

    def get_token(self, key: str) -> str | None:
        session = self._sessions.get(key)
        return session.backend_token if session else None

    def generation(self, key: str) -> int:
        """Counter that grows whenever the session is reset or its token swept."""
        return self._epoch + self._resets.get(key, 0)

    def set_token(self, key: str, token: str | None, generation: int | None = None) -> bool:
        """
        Store the backend token for a session.

        With ``generation`` given, the write is dropped (returning False) when
        the session was reset or swept since that generation was read.
        """
        if generation is not None and generation != self.generation(key):
            logger.debug(f"Dropped stale backend token for {key}")
            return False
        session = self.get_or_create(key)
        session.backend_token = token
        return True

    def clear_tokens(self) -> int:
        """Drop every backend token (e.g. after switching provider). Returns count cleared."""
        self._epoch += 1
        cleared = 0
        for session in self._sessions.values():
            if session.backend_token:
                session.backend_token = None
                cleared += 1
        if cleared:
            logger.info(f"Cleared {cleared} backend session token(s)")
        return cleared

    def list_sessions(self) -> list[dict[str, Any]]:
        """List sessions, most recently active first."""
        rows = [s.to_dict() for s in self._sessions.values()]
        return sorted(rows, key=lambda r: r["last_active_at"], reverse=True)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions
