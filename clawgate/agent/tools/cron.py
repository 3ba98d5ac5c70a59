"""Schedule tool for reminders and recurring tasks."""

import time
from datetime import datetime
from typing import Any

from clawgate.agent.tools.base import Tool, ToolContext
from clawgate.cron.service import CronError, CronService
from clawgate.cron.types import CronJob, CronSchedule


def _format_ms(ms: int | None) -> str:
    if ms is None:
        return "never"
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M %Z")


class ScheduleTool(Tool):
    """Tool to schedule messages and agent tasks for the current chat."""

    def __init__(self, cron_service: CronService):
        self._cron = cron_service

    @property
    def name(self) -> str:
        return "schedule"

    @property
    def description(self) -> str:
        return (
            "Schedule reminders and recurring tasks for this chat. Actions: add, list, remove. "
            "For add, give exactly one of delay_seconds, at, every_seconds or cron_expr. "
            "Set invoke_agent=true to have the assistant process the message when it fires "
            "and send its answer; otherwise the message is delivered as-is."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["add", "list", "remove"],
                    "description": "Action to perform",
                },
                "message": {
                    "type": "string",
                    "description": "Message to deliver, or the task for the assistant (for add)",
                },
                "delay_seconds": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Run once after this many seconds",
                },
                "at": {
                    "type": "string",
                    "description": "Run once at this ISO 8601 time, e.g. 2026-01-31T09:00:00",
                },
                "every_seconds": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Repeat at this interval in seconds",
                },
                "cron_expr": {
                    "type": "string",
                    "description": "Cron expression like '0 9 * * *'",
                },
                "tz": {
                    "type": "string",
                    "description": "IANA timezone for cron_expr, e.g. Europe/London (default: server local time)",
                },
                "invoke_agent": {
                    "type": "boolean",
                    "description": "true = assistant handles the message when it fires (default: false)",
                },
                "job_id": {
                    "type": "string",
                    "description": "Job ID (for remove)",
                },
            },
            "required": ["action"],
        }

    async def execute(
        self,
        context: ToolContext,
        action: str,
        message: str = "",
        delay_seconds: int | None = None,
        at: str | None = None,
        every_seconds: int | None = None,
        cron_expr: str | None = None,
        tz: str | None = None,
        invoke_agent: bool = False,
        job_id: str | None = None,
        **kwargs: Any,
    ) -> str:
        if action == "add":
            return self._add_job(context, message, delay_seconds, at, every_seconds, cron_expr, tz, invoke_agent)
        elif action == "list":
            return self._list_jobs(context)
        elif action == "remove":
            return self._remove_job(context, job_id)
        return f"Unknown action: {action}"

    def _add_job(
        self,
        context: ToolContext,
        message: str,
        delay_seconds: int | None,
        at: str | None,
        every_seconds: int | None,
        cron_expr: str | None,
        tz: str | None,
        invoke_agent: bool,
    ) -> str:
        if not message:
            return "Error: message is required for add"
        if not context.channel or not context.chat_id:
            return "Error: no chat to deliver to"

        given = [v for v in (delay_seconds, at, every_seconds, cron_expr) if v]
        if len(given) != 1:
            return "Error: give exactly one of delay_seconds, at, every_seconds or cron_expr"

        if delay_seconds:
            schedule = CronSchedule(kind="at", at_ms=int(time.time() * 1000) + delay_seconds * 1000)
        elif at:
            try:
                when = datetime.fromisoformat(at)
            except ValueError:
                return f"Error: could not parse time '{at}'"
            if when.tzinfo is None:
                when = when.astimezone()
            schedule = CronSchedule(kind="at", at_ms=int(when.timestamp() * 1000))
        elif every_seconds:
            schedule = CronSchedule(kind="every", every_ms=every_seconds * 1000)
        else:
            schedule = CronSchedule(kind="cron", expr=cron_expr, tz=tz or None)

        try:
            job = self._cron.add_job(
                name=message[:30],
                schedule=schedule,
                message=message,
                channel=context.channel,
                to=context.chat_id,
                session_key=context.session_key or None,
                invoke_agent=invoke_agent,
            )
        except CronError as e:
            return f"Error: {e}"
        kind_label = "task" if invoke_agent else "reminder"
        return f"Created {kind_label} '{job.name}' (id: {job.id}), next run {_format_ms(job.state.next_run_at_ms)}"

    def _jobs_for(self, context: ToolContext) -> list[CronJob]:
        return [
            job
            for job in self._cron.list_jobs(include_disabled=True)
            if job.payload.channel == context.channel and job.payload.to == context.chat_id
        ]

    def _list_jobs(self, context: ToolContext) -> str:
        jobs = self._jobs_for(context)
        if not jobs:
            return "No scheduled jobs."
        lines = []
        for j in jobs:
            kind_label = "task" if j.payload.invoke_agent else "reminder"
            status = "" if j.enabled else ", disabled"
            lines.append(
                f"- {j.name} (id: {j.id}, {j.schedule.describe()}, {kind_label}{status}, "
                f"next: {_format_ms(j.state.next_run_at_ms)})"
            )
        return "Scheduled jobs:\n" + "\n".join(lines)

    def _remove_job(self, context: ToolContext, job_id: str | None) -> str:
        if not job_id:
            return "Error: job_id is required for remove"
        if job_id in {j.id for j in self._jobs_for(context)} and self._cron.remove_job(job_id):
            return f"Removed job {job_id}"
        return f"Job {job_id} not found"
