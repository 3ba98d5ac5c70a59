import asyncio

from clawgate.agent.runner import Run, RunAborted, RunCoordinator, RunPayload
from clawgate.bus.queue import MessageBus


class ScriptedExecutor:
    """Executor whose runs block until released, recording the order they start in."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    def gate(self, text: str) -> asyncio.Event:
        return self.gates.setdefault(text, asyncio.Event())

    async def __call__(self, run: Run) -> str:
        key = run.session_key
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active[key] = max(self.max_active.get(key, 0), self.active[key])
        self.started.append(run.payload.text)
        try:
            await self.gate(run.payload.text).wait()
        finally:
            self.active[key] -= 1
        if run.payload.text == "boom":
            raise RuntimeError("backend exploded")
        if run.payload.text == "halt":
            raise RunAborted(run.run_id)
        return f"echo {run.payload.text}"


def _drain_events(q: asyncio.Queue):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


async def test_runs_for_one_session_complete_in_enqueue_order() -> None:
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor)
    runs = [coordinator.submit("s1", RunPayload(text=t)) for t in ("a", "b", "c")]
    await _settle()

    assert executor.started == ["a"]
    assert coordinator.get_queue_status("s1") == {"pending": 2, "processing": True}

    for text in ("c", "b", "a"):
        executor.gate(text).set()
    results = [await run.wait() for run in runs]

    assert [r.text for r in results] == ["echo a", "echo b", "echo c"]
    assert executor.started == ["a", "b", "c"]
    assert executor.max_active["s1"] == 1


async def test_sessions_run_in_parallel() -> None:
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor)
    coordinator.submit("s1", RunPayload(text="one"))
    coordinator.submit("s2", RunPayload(text="two"))
    await _settle()

    assert sorted(executor.started) == ["one", "two"]
    stats = coordinator.get_global_stats()
    assert stats["active_sessions"] == 2
    assert stats["total_sessions"] == 2
    assert stats["total_pending"] == 0


async def test_back_to_back_messages_queue_behind_the_first() -> None:
    bus = MessageBus()
    events = bus.register_run_listener()
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor, bus=bus)

    hello = coordinator.submit("wa:+1:room", RunPayload(text="hello"))
    world = coordinator.submit("wa:+1:room", RunPayload(text="world"))
    await _settle()

    seen = _drain_events(events)
    assert [(e.type, e.run_id) for e in seen] == [
        ("queued", hello.run_id),
        ("queued", world.run_id),
        ("processing", hello.run_id),
    ]
    assert seen[0].position == 0
    assert seen[1].position == 1
    assert seen[2].wait_ms is not None and seen[2].wait_ms < 100
    assert world.status == "queued"

    executor.gate("hello").set()
    assert (await hello.wait()).ok
    await _settle()

    seen = _drain_events(events)
    assert [(e.type, e.run_id) for e in seen] == [
        ("completed", hello.run_id),
        ("processing", world.run_id),
    ]
    executor.gate("world").set()
    assert (await world.wait()).text == "echo world"


async def test_abort_without_active_run_is_a_no_op() -> None:
    aborted: list[str] = []
    coordinator = RunCoordinator(ScriptedExecutor(), abort_handler=aborted.append)

    assert coordinator.abort("nobody") is False
    assert aborted == []
    assert coordinator.get_global_stats()["total_aborted"] == 0


async def test_abort_ends_active_run_and_starts_next() -> None:
    aborted: list[str] = []
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor, abort_handler=aborted.append)

    first = coordinator.submit("s1", RunPayload(text="long"))
    second = coordinator.submit("s1", RunPayload(text="next"))
    other = coordinator.submit("s2", RunPayload(text="elsewhere"))
    await _settle()

    assert coordinator.abort("s1") is True
    assert coordinator.abort("s1") is False
    assert aborted == ["s1"]

    result = await first.wait()
    assert result.status == "aborted"
    await _settle()
    assert executor.started[-1] == "next"
    assert coordinator.get_queue_status("s1") == {"pending": 0, "processing": True}
    assert coordinator.get_queue_status("s2") == {"pending": 0, "processing": True}

    executor.gate("next").set()
    executor.gate("elsewhere").set()
    assert (await second.wait()).text == "echo next"
    assert (await other.wait()).ok
    assert coordinator.get_global_stats()["total_aborted"] == 1


async def test_failures_and_backend_aborts_become_results() -> None:
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor)
    executor.gate("boom").set()
    executor.gate("halt").set()
    executor.gate("fine").set()

    boom = await coordinator.enqueue("s1", RunPayload(text="boom"))
    halt = await coordinator.enqueue("s1", RunPayload(text="halt"))
    fine = await coordinator.enqueue("s1", RunPayload(text="fine"))

    assert boom.status == "failed"
    assert boom.error == "backend exploded"
    assert halt.status == "aborted"
    assert fine.status == "completed"

    stats = coordinator.get_global_stats()
    assert stats["total_processed"] == 1
    assert stats["total_failed"] == 1
    assert stats["total_aborted"] == 1


async def test_timeout_fails_only_that_run() -> None:
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor, timeout_s=0.05)

    slow = coordinator.submit("s1", RunPayload(text="slow"))
    quick = coordinator.submit("s1", RunPayload(text="quick"))
    executor.gate("quick").set()

    result = await slow.wait()
    assert result.status == "failed"
    assert "timed out" in (result.error or "")
    assert (await quick.wait()).ok


async def test_stop_aborts_outstanding_runs() -> None:
    executor = ScriptedExecutor()
    coordinator = RunCoordinator(executor)
    active = coordinator.submit("s1", RunPayload(text="stuck"))
    queued = coordinator.submit("s1", RunPayload(text="later"))
    await _settle()

    await coordinator.stop()

    assert (await active.wait()).status == "aborted"
    assert (await queued.wait()).status == "aborted"
