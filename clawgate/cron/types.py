"""Cron types."""

from dataclasses import dataclass, field
from typing import Any, Literal


ScheduleKind = Literal["at", "every", "cron"]


@dataclass
class CronSchedule:
    """When a job fires: once at at_ms, every every_ms, or on a cron expression."""
    kind: ScheduleKind
    at_ms: int | None = None
    every_ms: int | None = None
    expr: str | None = None
    tz: str | None = None  # IANA zone for cron expressions; local time if unset

    @property
    def is_recurring(self) -> bool:
        return self.kind in ("every", "cron")

    def describe(self) -> str:
        if self.kind == "every":
            return f"every {(self.every_ms or 0) // 1000}s"
        if self.kind == "cron":
            return f"{self.expr} ({self.tz})" if self.tz else str(self.expr or "")
        return "one-time"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "atMs": self.at_ms,
            "everyMs": self.every_ms,
            "expr": self.expr,
            "tz": self.tz,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CronSchedule":
        return cls(
            kind=data.get("kind", "at"),
            at_ms=_opt_int(data.get("atMs")),
            every_ms=_opt_int(data.get("everyMs")),
            expr=data.get("expr") or None,
            tz=data.get("tz") or None,
        )


@dataclass
class CronPayload:
    """What a job delivers and where."""
    message: str
    invoke_agent: bool = False  # True: run through the agent and send its reply
    channel: str = ""  # Target platform, e.g. "whatsapp"
    to: str = ""  # Target chat id
    session_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "invokeAgent": self.invoke_agent,
            "channel": self.channel,
            "to": self.to,
            "sessionKey": self.session_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CronPayload":
        return cls(
            message=str(data.get("message") or ""),
            invoke_agent=bool(data.get("invokeAgent", False)),
            channel=str(data.get("channel") or ""),
            to=str(data.get("to") or ""),
            session_key=data.get("sessionKey") or None,
        )


@dataclass
class CronJobState:
    """Mutable run-state of a job."""
    next_run_at_ms: int | None = None
    last_run_at_ms: int | None = None
    last_status: str | None = None  # "ok" | "error"
    last_error: str | None = None
    run_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "nextRunAtMs": self.next_run_at_ms,
            "lastRunAtMs": self.last_run_at_ms,
            "lastStatus": self.last_status,
            "lastError": self.last_error,
            "runCount": self.run_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CronJobState":
        return cls(
            next_run_at_ms=_opt_int(data.get("nextRunAtMs")),
            last_run_at_ms=_opt_int(data.get("lastRunAtMs")),
            last_status=data.get("lastStatus"),
            last_error=data.get("lastError"),
            run_count=int(data.get("runCount") or 0),
        )


@dataclass
class CronJob:
    """A persisted scheduled job."""
    id: str
    name: str
    schedule: CronSchedule
    payload: CronPayload
    enabled: bool = True
    state: CronJobState = field(default_factory=CronJobState)
    created_at_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "schedule": self.schedule.to_dict(),
            "payload": self.payload.to_dict(),
            "state": self.state.to_dict(),
            "createdAtMs": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CronJob":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            enabled=bool(data.get("enabled", True)),
            schedule=CronSchedule.from_dict(data.get("schedule") or {}),
            payload=CronPayload.from_dict(data.get("payload") or {}),
            state=CronJobState.from_dict(data.get("state") or {}),
            created_at_ms=int(data.get("createdAtMs") or 0),
        )


def _opt_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
