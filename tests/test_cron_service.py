import json
import time
from datetime import datetime, timezone

import pytest
from croniter import croniter

from clawgate.agent.tools.base import ToolContext
from clawgate.agent.tools.cron import ScheduleTool
from clawgate.cron.service import CronError, CronService, compute_next_run
from clawgate.cron.types import CronJob, CronSchedule

DAY_MS = 24 * 60 * 60 * 1000


class Recorder:
    def __init__(self, fail: bool = False) -> None:
        self.fired: list[CronJob] = []
        self.fail = fail

    async def __call__(self, job: CronJob) -> None:
        self.fired.append(job)
        if self.fail:
            raise RuntimeError("channel offline")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _stored_ids(path) -> list[str]:
    data = json.loads(path.read_text(encoding="utf-8"))
    return [row["id"] for row in data["jobs"]]


async def test_one_shot_job_fires_once_and_is_removed(tmp_path) -> None:
    store = tmp_path / "jobs.json"
    recorder = Recorder()
    service = CronService(store, on_job=recorder)
    job = service.add_job(
        "ping",
        CronSchedule(kind="at", at_ms=_now_ms() - 1000),
        "ping",
        channel="whatsapp",
        to="15550001111",
    )
    assert _stored_ids(store) == [job.id]

    fired = await service.tick()
    await service.wait_inflight()

    assert [j.id for j in fired] == [job.id]
    assert [j.payload.message for j in recorder.fired] == ["ping"]
    assert service.get_job(job.id) is None
    assert _stored_ids(store) == []

    assert await service.tick() == []
    await service.wait_inflight()
    assert len(recorder.fired) == 1


async def test_future_one_shot_is_not_due(tmp_path) -> None:
    recorder = Recorder()
    service = CronService(tmp_path / "jobs.json", on_job=recorder)
    service.add_job("later", CronSchedule(kind="at", at_ms=_now_ms() + 60_000), "later", "telegram", "42")

    assert await service.tick() == []
    assert recorder.fired == []


async def test_daily_cron_advances_exactly_one_day(tmp_path) -> None:
    recorder = Recorder()
    service = CronService(tmp_path / "jobs.json", on_job=recorder)
    job = service.add_job(
        "standup",
        CronSchedule(kind="cron", expr="0 9 * * *", tz="UTC"),
        "standup time",
        channel="telegram",
        to="42",
    )
    now = datetime.now(timezone.utc)
    previous = croniter("0 9 * * *", now).get_prev(datetime)
    previous_ms = int(previous.timestamp() * 1000)
    service.get_job(job.id).state.next_run_at_ms = previous_ms

    await service.tick()
    await service.wait_inflight()

    assert len(recorder.fired) == 1
    state = service.get_job(job.id).state
    assert state.next_run_at_ms == previous_ms + DAY_MS
    assert state.run_count == 1
    assert state.last_status == "ok"


async def test_interval_job_reschedules_from_fire_time(tmp_path) -> None:
    recorder = Recorder()
    service = CronService(tmp_path / "jobs.json", on_job=recorder)
    job = service.add_job("poll", CronSchedule(kind="every", every_ms=60_000), "poll", "telegram", "42")
    service.get_job(job.id).state.next_run_at_ms = _now_ms() - 5

    await service.tick()
    await service.wait_inflight()

    next_run = service.get_job(job.id).state.next_run_at_ms
    assert next_run is not None
    assert next_run - _now_ms() > 55_000


async def test_failed_delivery_is_recorded(tmp_path) -> None:
    service = CronService(tmp_path / "jobs.json", on_job=Recorder(fail=True))
    job = service.add_job("poll", CronSchedule(kind="every", every_ms=60_000), "poll", "telegram", "42")
    service.get_job(job.id).state.next_run_at_ms = _now_ms() - 5

    await service.tick()
    await service.wait_inflight()

    state = service.get_job(job.id).state
    assert state.last_status == "error"
    assert state.last_error == "channel offline"


async def test_jobs_survive_restart(tmp_path) -> None:
    store = tmp_path / "cron" / "jobs.json"
    first = CronService(store)
    job = first.add_job(
        "daily",
        CronSchedule(kind="cron", expr="30 7 * * 1-5", tz="Europe/London"),
        "summarize my inbox",
        channel="whatsapp",
        to="15550001111",
        session_key="clawgate:whatsapp:15550001111",
        invoke_agent=True,
    )

    reloaded = CronService(store).get_job(job.id)

    assert reloaded is not None
    assert reloaded.schedule.expr == "30 7 * * 1-5"
    assert reloaded.schedule.tz == "Europe/London"
    assert reloaded.payload.invoke_agent is True
    assert reloaded.payload.session_key == "clawgate:whatsapp:15550001111"
    assert reloaded.state.next_run_at_ms == job.state.next_run_at_ms


def test_corrupt_store_starts_empty(tmp_path) -> None:
    store = tmp_path / "jobs.json"
    store.write_text("{not json", encoding="utf-8")

    assert CronService(store).list_jobs(include_disabled=True) == []


@pytest.mark.parametrize(
    "schedule",
    [
        CronSchedule(kind="cron", expr="not a cron"),
        CronSchedule(kind="cron", expr="0 9 * * *", tz="Mars/Olympus"),
        CronSchedule(kind="every", every_ms=0),
        CronSchedule(kind="at"),
    ],
)
def test_invalid_schedules_are_rejected(tmp_path, schedule) -> None:
    service = CronService(tmp_path / "jobs.json")
    with pytest.raises(CronError):
        service.add_job("bad", schedule, "hello", "telegram", "42")
    assert not (tmp_path / "jobs.json").exists()


def test_disable_and_enable(tmp_path) -> None:
    service = CronService(tmp_path / "jobs.json")
    job = service.add_job("poll", CronSchedule(kind="every", every_ms=60_000), "poll", "telegram", "42")

    service.enable_job(job.id, enabled=False)
    assert service.list_jobs() == []
    assert [j.id for j in service.list_jobs(include_disabled=True)] == [job.id]

    service.enable_job(job.id)
    assert [j.id for j in service.list_jobs()] == [job.id]
    assert service.enable_job("missing") is None


def test_compute_next_run_for_cron_respects_timezone() -> None:
    base = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    nxt = compute_next_run(CronSchedule(kind="cron", expr="0 9 * * *", tz="UTC"), int(base.timestamp() * 1000))
    assert nxt == int(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc).timestamp() * 1000)


async def test_schedule_tool_manages_jobs_for_current_chat(tmp_path) -> None:
    service = CronService(tmp_path / "jobs.json")
    tool = ScheduleTool(service)
    ctx = ToolContext(channel="telegram", chat_id="42", session_key="clawgate:telegram:42", run_id="r1")
    other = ToolContext(channel="telegram", chat_id="99", session_key="clawgate:telegram:99", run_id="r2")

    created = await tool.execute(ctx, action="add", message="stretch", delay_seconds=600)
    assert created.startswith("Created reminder 'stretch'")
    job = service.list_jobs()[0]
    assert (job.payload.channel, job.payload.to) == ("telegram", "42")
    assert job.payload.session_key == "clawgate:telegram:42"

    assert "stretch" in await tool.execute(ctx, action="list")
    assert await tool.execute(other, action="list") == "No scheduled jobs."
    assert await tool.execute(other, action="remove", job_id=job.id) == f"Job {job.id} not found"
    assert await tool.execute(ctx, action="remove", job_id=job.id) == f"Removed job {job.id}"
    assert service.list_jobs() == []


async def test_schedule_tool_rejects_ambiguous_timing(tmp_path) -> None:
    tool = ScheduleTool(CronService(tmp_path / "jobs.json"))
    ctx = ToolContext(channel="telegram", chat_id="42", session_key="clawgate:telegram:42", run_id="r1")

    result = await tool.execute(ctx, action="add", message="x", delay_seconds=5, every_seconds=10)
    assert result.startswith("Error: give exactly one of")

    result = await tool.execute(ctx, action="add", message="x", cron_expr="every monday")
    assert result.startswith("Error: Invalid cron expression")
