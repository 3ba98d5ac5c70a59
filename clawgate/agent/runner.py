"""Run coordinator: at most one active run per session, the rest in FIFO order."""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from loguru import logger

from clawgate.bus.events import ImageAttachment, RunEvent
from clawgate.bus.queue import MessageBus

RunStatus = Literal["queued", "processing", "completed", "failed", "aborted"]


class RunAborted(Exception):
    """Raised by an executor when its backend stream ended in an abort."""


@dataclass
class RunPayload:
    """What a run asks the backend to do."""
    text: str
    image: ImageAttachment | None = None
    channel: str = ""
    chat_id: str = ""


@dataclass
class RunResult:
    """Outcome of a run, delivered to whoever submitted it."""
    run_id: str
    session_key: str
    status: RunStatus
    text: str = ""
    error: str | None = None
    wait_ms: float = 0.0
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "completed"


@dataclass
class Run:
    """One submitted message, queued or executing."""
    run_id: str
    session_key: str
    payload: RunPayload
    future: asyncio.Future[RunResult] = field(repr=False)
    enqueued_at: float = field(default_factory=time.monotonic)
    started_at: float | None = None
    finished_at: float | None = None
    status: RunStatus = "queued"
    error: str | None = None
    abort_requested: bool = False

    async def wait(self) -> RunResult:
        return await asyncio.shield(self.future)


@dataclass
class _SessionQueue:
    pending: deque[Run] = field(default_factory=deque)
    active: Run | None = None
    execution: asyncio.Task | None = None
    drainer: asyncio.Task | None = None
    processed: int = 0
    failed: int = 0
    aborted: int = 0


Executor = Callable[[Run], Awaitable[str]]


class RunCoordinator:
    """
    Serializes runs per session key while sessions run in parallel.

    A run is registered synchronously on submit, so its queue position is
    fixed on arrival. Each session with work has one drain task that pops
    runs in order and executes them one at a time. Failures, timeouts and
    aborts end only the run they belong to; the caller always receives a
    RunResult.

    Statistics are derived from the per-session queues on every read.
    """

    def __init__(
        self,
        executor: Executor,
        bus: MessageBus | None = None,
        abort_handler: Callable[[str], Any] | None = None,
        timeout_s: float | None = None,
    ):
        self.executor = executor
        self.bus = bus
        self.abort_handler = abort_handler
        self.timeout_s = timeout_s
        self._queues: dict[str, _SessionQueue] = {}

    def submit(self, session_key: str, payload: RunPayload) -> Run:
        """Register a run and start the session's drain task if it is idle."""
        loop = asyncio.get_running_loop()
        queue = self._queues.setdefault(session_key, _SessionQueue())
        run = Run(
            run_id=uuid.uuid4().hex[:12],
            session_key=session_key,
            payload=payload,
            future=loop.create_future(),
        )
        queue.pending.append(run)
        ahead = len(queue.pending) - 1 + (1 if queue.active is not None else 0)
        self._emit(RunEvent(
            type="queued",
            run_id=run.run_id,
            session_key=session_key,
            position=ahead,
            queue_length=len(queue.pending),
        ))
        if queue.drainer is None:
            queue.drainer = asyncio.create_task(self._drain(session_key, queue))
        return run

    async def enqueue(self, session_key: str, payload: RunPayload) -> RunResult:
        """Submit a run and wait for its result."""
        return await self.submit(session_key, payload).wait()

    def abort(self, session_key: str) -> bool:
        """
        Interrupt the active run for a session.

        Queued runs are untouched; the next one starts as soon as the
        active run has wound down.

        Returns:
            True if a run was processing and has been signalled.
        """
        queue = self._queues.get(session_key)
        if queue is None or queue.active is None or queue.active.abort_requested:
            return False
        run = queue.active
        run.abort_requested = True
        if self.abort_handler is not None:
            try:
                self.abort_handler(session_key)
            except Exception as e:
                logger.warning(f"[Queue] Backend abort failed for {session_key}: {e}")
        if queue.execution is not None and not queue.execution.done():
            queue.execution.cancel()
        logger.info(f"[Queue] ⏹️ Abort requested for run {run.run_id} ({session_key})")
        return True

    def get_queue_status(self, session_key: str) -> dict[str, Any]:
        queue = self._queues.get(session_key)
        if queue is None:
            return {"pending": 0, "processing": False}
        return {"pending": len(queue.pending), "processing": queue.active is not None}

    def get_global_stats(self) -> dict[str, int]:
        queues = list(self._queues.values())
        return {
            "total_pending": sum(len(q.pending) for q in queues),
            "active_sessions": sum(1 for q in queues if q.active is not None or q.pending),
            "total_sessions": len(queues),
            "total_processed": sum(q.processed for q in queues),
            "total_failed": sum(q.failed for q in queues),
            "total_aborted": sum(q.aborted for q in queues),
        }

    async def stop(self) -> None:
        """Cancel all work; outstanding callers receive an aborted result."""
        drainers = [q.drainer for q in self._queues.values() if q.drainer is not None]
        for task in drainers:
            task.cancel()
        if drainers:
            await asyncio.gather(*drainers, return_exceptions=True)
        for queue in self._queues.values():
            while queue.pending:
                run = queue.pending.popleft()
                self._finish(queue, run, "aborted", error="Gateway stopped")

    async def _drain(self, session_key: str, queue: _SessionQueue) -> None:
        try:
            while queue.pending:
                run = queue.pending.popleft()
                await self._execute(queue, run)
        finally:
            queue.drainer = None

    async def _execute(self, queue: _SessionQueue, run: Run) -> None:
        run.status = "processing"
        run.started_at = time.monotonic()
        queue.active = run
        self._emit(RunEvent(
            type="processing",
            run_id=run.run_id,
            session_key=run.session_key,
            wait_ms=(run.started_at - run.enqueued_at) * 1000,
            remaining=len(queue.pending),
        ))

        execution = asyncio.create_task(self._invoke(run))
        queue.execution = execution
        try:
            await asyncio.wait({execution})
        except asyncio.CancelledError:
            execution.cancel()
            self._finish(queue, run, "aborted", error="Gateway stopped")
            raise

        if execution.cancelled():
            self._finish(queue, run, "aborted")
            return
        error = execution.exception()
        if error is None:
            self._finish(queue, run, "completed", text=execution.result() or "")
        elif isinstance(error, RunAborted):
            self._finish(queue, run, "aborted")
        elif isinstance(error, asyncio.TimeoutError):
            self._finish(queue, run, "failed", error=f"Run timed out after {self.timeout_s:g} seconds")
        else:
            logger.opt(exception=error).debug(f"[Queue] Run {run.run_id} raised")
            self._finish(queue, run, "failed", error=str(error) or type(error).__name__)

    async def _invoke(self, run: Run) -> str:
        if self.timeout_s:
            return await asyncio.wait_for(self.executor(run), timeout=self.timeout_s)
        return await self.executor(run)

    def _finish(
        self,
        queue: _SessionQueue,
        run: Run,
        status: RunStatus,
        text: str = "",
        error: str | None = None,
    ) -> None:
        run.status = status
        run.error = error
        run.finished_at = time.monotonic()
        started = run.started_at or run.finished_at
        wait_ms = (started - run.enqueued_at) * 1000
        duration_ms = (run.finished_at - started) * 1000 if run.started_at else 0.0

        if queue.active is run:
            queue.active = None
            queue.execution = None
        if status == "completed":
            queue.processed += 1
            self._emit(RunEvent(type="completed", run_id=run.run_id, session_key=run.session_key, duration_ms=duration_ms))
        elif status == "failed":
            queue.failed += 1
            self._emit(RunEvent(type="failed", run_id=run.run_id, session_key=run.session_key, error=error))
        else:
            queue.aborted += 1
            self._emit(RunEvent(type="aborted", run_id=run.run_id, session_key=run.session_key, error=error))

        if not run.future.done():
            run.future.set_result(RunResult(
                run_id=run.run_id,
                session_key=run.session_key,
                status=status,
                text=text,
                error=error,
                wait_ms=wait_ms,
                duration_ms=duration_ms,
            ))

    def _emit(self, event: RunEvent) -> None:
        if event.type == "queued":
            if event.position:
                logger.info(f"[Queue] 📥 Queued {event.run_id}: {event.position} ahead, {event.queue_length} pending")
        elif event.type == "processing":
            if (event.wait_ms or 0) > 100:
                logger.info(
                    f"[Queue] ⚙️  Processing {event.run_id} "
                    f"(waited {round(event.wait_ms or 0)}ms, {event.remaining} remaining)"
                )
        elif event.type == "completed":
            logger.info(f"[Queue] ✓ Completed {event.run_id} in {round(event.duration_ms or 0)}ms")
        elif event.type == "failed":
            logger.warning(f"[Queue] ✗ Failed {event.run_id}: {event.error}")
        else:
            logger.info(f"[Queue] ⏹️ Aborted {event.run_id}")
        if self.bus is not None:
            self.bus.emit_run_event(event)
