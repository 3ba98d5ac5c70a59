"""Cron service: persistent scheduled jobs that fire into the gateway."""

import asyncio
import json
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from loguru import logger

from clawgate.cron.types import CronJob, CronJobState, CronPayload, CronSchedule
from clawgate.utils.helpers import atomic_write_json

STORE_VERSION = 1


class CronError(ValueError):
    """Raised for invalid job definitions."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _zone(tz: str | None):
    if not tz:
        return None
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise CronError(f"Unknown timezone: {tz}") from e


def compute_next_run(schedule: CronSchedule, now_ms: int) -> int | None:
    """Next fire time in ms after now_ms, or at_ms for one-shot jobs."""
    if schedule.kind == "at":
        return schedule.at_ms
    if schedule.kind == "every":
        if not schedule.every_ms or schedule.every_ms <= 0:
            return None
        return now_ms + schedule.every_ms
    if schedule.kind == "cron":
        if not schedule.expr:
            return None
        zone = _zone(schedule.tz)
        if zone is not None:
            base = datetime.fromtimestamp(now_ms / 1000, tz=zone)
        else:
            base = datetime.fromtimestamp(now_ms / 1000).astimezone()
        nxt = croniter(schedule.expr, base).get_next(datetime)
        return int(nxt.timestamp() * 1000)
    return None


def validate_schedule(schedule: CronSchedule) -> None:
    """Raise CronError if the schedule can never fire."""
    if schedule.kind == "at":
        if schedule.at_ms is None:
            raise CronError("One-time jobs need a time to run at")
    elif schedule.kind == "every":
        if not schedule.every_ms or schedule.every_ms <= 0:
            raise CronError("Interval jobs need a positive interval")
    elif schedule.kind == "cron":
        if not schedule.expr or not croniter.is_valid(schedule.expr):
            raise CronError(f"Invalid cron expression: {schedule.expr!r}")
        _zone(schedule.tz)
    else:
        raise CronError(f"Unknown schedule kind: {schedule.kind}")


class CronService:
    """
    Durable job scheduler.

    Jobs live in a JSON file that is read in full at construction and
    rewritten on every create, fire and delete. The service only decides
    when a job is due; delivery is delegated to the on_job callback, which
    runs in its own task so a slow or failing delivery never stalls the
    ticker or other jobs.
    """

    def __init__(
        self,
        store_path: Path,
        on_job: Callable[[CronJob], Awaitable[Any]] | None = None,
        max_sleep_s: float = 30.0,
    ):
        self.store_path = Path(store_path)
        self.on_job = on_job
        self.max_sleep_s = max_sleep_s
        self._jobs: dict[str, CronJob] = {}
        self._running = False
        self._task: asyncio.Task | None = None
        self._wakeup: asyncio.Event | None = None
        self._inflight: set[asyncio.Task] = set()
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if not self.store_path.exists():
            return
        try:
            data = json.loads(self.store_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"[Cron] Failed to read job store {self.store_path}: {e}")
            return

        rows = data.get("jobs", []) if isinstance(data, dict) else []
        now = _now_ms()
        changed = False
        for row in rows:
            try:
                job = CronJob.from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[Cron] Skipping malformed job record: {e}")
                continue
            if job.enabled and job.state.next_run_at_ms is None:
                try:
                    job.state.next_run_at_ms = compute_next_run(job.schedule, now)
                    changed = True
                except (CronError, ValueError, KeyError) as e:
                    logger.warning(f"[Cron] Cannot schedule job {job.id}: {e}")
            self._jobs[job.id] = job
        if changed:
            self._save()
        logger.debug(f"[Cron] Loaded {len(self._jobs)} job(s) from {self.store_path}")

    def _save(self) -> None:
        payload = {
            "version": STORE_VERSION,
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }
        atomic_write_json(self.store_path, payload)

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------

    def add_job(
        self,
        name: str,
        schedule: CronSchedule,
        message: str,
        channel: str = "",
        to: str = "",
        session_key: str | None = None,
        invoke_agent: bool = False,
    ) -> CronJob:
        """Create, persist and schedule a job."""
        validate_schedule(schedule)
        if not message:
            raise CronError("A job needs a message")
        now = _now_ms()
        job = CronJob(
            id=uuid.uuid4().hex[:8],
            name=name or message[:30],
            schedule=schedule,
            payload=CronPayload(
                message=message,
                invoke_agent=invoke_agent,
                channel=channel,
                to=to,
                session_key=session_key,
            ),
            state=CronJobState(next_run_at_ms=compute_next_run(schedule, now)),
            created_at_ms=now,
        )
        self._jobs[job.id] = job
        self._save()
        self._wake()
        logger.info(f"[Cron] Added job {job.id} ({schedule.describe()})")
        return job

    def get_job(self, job_id: str) -> CronJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self, include_disabled: bool = False) -> list[CronJob]:
        """List jobs ordered by next run time."""
        jobs = [j for j in self._jobs.values() if include_disabled or j.enabled]
        return sorted(jobs, key=lambda j: j.state.next_run_at_ms or float("inf"))

    def remove_job(self, job_id: str) -> bool:
        """Delete a job. Returns False if it does not exist."""
        if self._jobs.pop(job_id, None) is None:
            return False
        self._save()
        self._wake()
        logger.info(f"[Cron] Removed job {job_id}")
        return True

    def enable_job(self, job_id: str, enabled: bool = True) -> CronJob | None:
        """Enable or disable a job, rescheduling it when enabled."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        job.enabled = enabled
        if enabled:
            job.state.next_run_at_ms = compute_next_run(job.schedule, _now_ms())
        self._save()
        self._wake()
        return job

    async def run_job(self, job_id: str, force: bool = False) -> bool:
        """Run a job now without changing its schedule."""
        job = self._jobs.get(job_id)
        if job is None or (not job.enabled and not force):
            return False
        return await self._execute(job)

    def status(self) -> dict[str, Any]:
        enabled = [j for j in self._jobs.values() if j.enabled]
        due = [j.state.next_run_at_ms for j in enabled if j.state.next_run_at_ms is not None]
        return {
            "enabled": self._running,
            "jobs": len(self._jobs),
            "next_wake_at_ms": min(due) if due else None,
        }

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"[Cron] Started with {len(self._jobs)} job(s)")

    def stop(self) -> None:
        """Stop the scheduler loop. In-flight deliveries are left to finish."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                delay = self._seconds_until_next()
                assert self._wakeup is not None
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[Cron] Scheduler loop error")
                await asyncio.sleep(2.0)

    def _seconds_until_next(self) -> float:
        due = [
            j.state.next_run_at_ms
            for j in self._jobs.values()
            if j.enabled and j.state.next_run_at_ms is not None
        ]
        if not due:
            return self.max_sleep_s
        delay = (min(due) - _now_ms()) / 1000
        return max(0.01, min(self.max_sleep_s, delay))

    async def tick(self) -> list[CronJob]:
        """
        Fire every due job once.

        Each due job is advanced (recurring) or removed (one-shot) and the
        store persisted before delivery is dispatched.

        Returns:
            The jobs that fired.
        """
        now = _now_ms()
        due = [
            job
            for job in self._jobs.values()
            if job.enabled
            and job.state.next_run_at_ms is not None
            and job.state.next_run_at_ms <= now
        ]
        if not due:
            return []

        for job in due:
            job.state.last_run_at_ms = now
            job.state.run_count += 1
            if job.schedule.is_recurring:
                try:
                    job.state.next_run_at_ms = compute_next_run(job.schedule, now)
                except (CronError, ValueError, KeyError) as e:
                    logger.error(f"[Cron] Cannot reschedule job {job.id}, disabling: {e}")
                    job.enabled = False
                    job.state.next_run_at_ms = None
            else:
                self._jobs.pop(job.id, None)
        self._save()

        for job in due:
            logger.info(f"[Cron] ⏰ Firing job {job.id}{' (invoking agent)' if job.payload.invoke_agent else ''}")
            self._dispatch(job)
        return due

    def _dispatch(self, job: CronJob) -> None:
        if self.on_job is None:
            return
        task = asyncio.create_task(self._execute(job))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _execute(self, job: CronJob) -> bool:
        if self.on_job is None:
            return False
        ok = True
        error = None
        try:
            await self.on_job(job)
        except Exception as e:
            ok = False
            error = str(e)
            logger.exception(f"[Cron] Job {job.id} failed")

        stored = self._jobs.get(job.id)
        if stored is not None:
            stored.state.last_status = "ok" if ok else "error"
            stored.state.last_error = error
            self._save()
        return ok

    async def wait_inflight(self) -> None:
        """Wait for dispatched deliveries to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
