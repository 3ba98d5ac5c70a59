"""Opencode provider: drives a local `opencode serve` process over HTTP and SSE."""

import asyncio
import json
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx
from loguru import logger

from clawgate.bus.events import ImageAttachment
from clawgate.config.schema import OpencodeProviderConfig
from clawgate.providers.base import (
    BaseProvider,
    CanUseTool,
    ModelOption,
    ProviderEvent,
    ProviderUnavailableError,
)
from clawgate.session.manager import SessionRegistry

if TYPE_CHECKING:
    from clawgate.agent.tools.base import ToolContext
    from clawgate.agent.tools.registry import ToolRegistry


TOOL_PART_TYPES = ("tool", "tool-invocation", "tool_invocation")
TOOL_RESULT_PART_TYPES = ("tool-result", "tool_result")


def _part_id(part: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = part.get(key)
        if value:
            return str(value)
    return ""


class OpencodeStreamNormalizer:
    """
    Turns opencode server events for one session into provider events.

    The server republishes whole parts on every update, so text and
    reasoning arrive as growing snapshots and tool parts repeat as their
    state changes. Output is incremental deltas and one announcement per
    tool call.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.finished = False
        self.failed = False
        self._user_message_id: str | None = None
        self._lengths: dict[str, int] = {}
        self._announced: set[str] = set()
        self._completed: set[str] = set()

    def feed(self, event: dict[str, Any]) -> list[ProviderEvent]:
        etype = event.get("type")
        props = event.get("properties") or {}
        part = props.get("part") if isinstance(props.get("part"), dict) else props
        session = props.get("session") if isinstance(props.get("session"), dict) else {}
        event_session = props.get("sessionID") or part.get("sessionID") or session.get("id")
        if event_session and event_session != self.session_id:
            return []

        if etype == "message.part.updated":
            return self._part(part)
        if etype == "session.idle":
            self.finished = True
        elif etype == "session.error":
            self.finished = True
            self.failed = True
            return [ProviderEvent(type="error", error=self._error_text(props))]
        return []

    def _part(self, part: dict[str, Any]) -> list[ProviderEvent]:
        ptype = part.get("type")
        message_id = part.get("messageID")

        # The first text part is the echo of our own prompt.
        if self._user_message_id is None and ptype == "text":
            self._user_message_id = message_id
            return []
        if message_id is not None and message_id == self._user_message_id:
            return []

        if ptype == "text":
            delta = self._delta(part.get("id", ""), part.get("text") or "")
            return [ProviderEvent(type="text_delta", text=delta)] if delta else []
        if ptype == "reasoning":
            delta = self._delta(part.get("id", ""), part.get("reasoning") or part.get("text") or "")
            return [ProviderEvent(type="reasoning_delta", text=delta)] if delta else []
        if ptype in TOOL_PART_TYPES:
            return self._tool(part)
        if ptype in TOOL_RESULT_PART_TYPES:
            tool_id = _part_id(part, "toolInvocationId", "callID", "id")
            result = part.get("result") or part.get("output") or part.get("content")
            return [ProviderEvent(type="tool_result", tool_id=tool_id, result=result)]
        return []

    def _tool(self, part: dict[str, Any]) -> list[ProviderEvent]:
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        status = state.get("status")
        if status == "pending":
            return []
        tool_id = _part_id(part, "toolInvocationId", "callID", "id", "tool_invocation_id")

        events: list[ProviderEvent] = []
        if tool_id not in self._announced:
            self._announced.add(tool_id)
            events.append(
                ProviderEvent(
                    type="tool_use",
                    tool_name=part.get("toolName") or part.get("tool") or part.get("name") or "",
                    tool_input=state.get("input") or part.get("args") or part.get("input") or {},
                    tool_id=tool_id,
                )
            )
        if status in ("completed", "error") and tool_id not in self._completed:
            self._completed.add(tool_id)
            result = state.get("output") if status == "completed" else state.get("error")
            events.append(ProviderEvent(type="tool_result", tool_id=tool_id, result=result))
        return events

    def _delta(self, part_id: str, snapshot: str) -> str:
        previous = self._lengths.get(part_id, 0)
        if len(snapshot) <= previous:
            return ""
        self._lengths[part_id] = len(snapshot)
        return snapshot[previous:]

    @staticmethod
    def _error_text(props: dict[str, Any]) -> str:
        if props.get("message"):
            return str(props["message"])
        error = props.get("error")
        if isinstance(error, dict):
            data = error.get("data") if isinstance(error.get("data"), dict) else {}
            return str(data.get("message") or error.get("name") or "Session error")
        return str(error or "Session error")


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Parse a server-sent event stream into JSON payloads."""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                raw = "\n".join(data)
                data = []
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug(f"[opencode] Skipping non-JSON event: {raw[:100]}")
                    continue
                if isinstance(payload, dict):
                    yield payload
            continue
        if line.startswith("data:"):
            data.append(line[5:].lstrip())
    if data:
        try:
            payload = json.loads("\n".join(data))
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict):
            yield payload


class OpencodeProvider(BaseProvider):
    """
    Backend on a local opencode server.

    Session tokens are opencode session ids. Because the server accepts no
    per-session system prompt, instructions are prepended to the first
    message sent on each opencode session.
    """

    name = "opencode"

    MODELS = [
        ModelOption(id="opencode/big-pickle", label="Big Pickle (reasoning)"),
        ModelOption(id="opencode/gpt-5-nano", label="GPT-5 Nano"),
        ModelOption(id="opencode/glm-4.7-free", label="GLM-4.7"),
        ModelOption(id="opencode/grok-code", label="Grok Code Fast"),
        ModelOption(id="opencode/minimax-m2.1-free", label="MiniMax M2.1"),
    ]

    def __init__(
        self,
        config: OpencodeProviderConfig,
        sessions: SessionRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(config, sessions, default_model=config.model)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._init_lock = asyncio.Lock()
        self._primed: dict[str, str] = {}
        self._running: dict[str, str] = {}

    @property
    def base_url(self) -> str:
        if self.config.use_existing_server and self.config.existing_server_url:
            return self.config.existing_server_url.rstrip("/")
        return f"http://{self.config.hostname}:{self.config.port}"

    def get_available_models(self) -> list[ModelOption]:
        return list(self.MODELS)

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._client is not None:
                return
            client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(30.0, read=None),
                transport=self._transport,
            )
            if not self.config.use_existing_server and self._transport is None:
                try:
                    await self._start_server(client)
                except BaseException:
                    await client.aclose()
                    raise
            self._client = client
            logger.info(f"[opencode] Using server at {self.base_url}")

    async def _start_server(self, client: httpx.AsyncClient) -> None:
        args = ["serve", "--hostname", self.config.hostname, "--port", str(self.config.port)]
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.binary,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise ProviderUnavailableError(f"opencode binary not found: {self.config.binary}") from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout_s
        while loop.time() < deadline:
            if self._process.returncode is not None:
                raise ProviderUnavailableError(f"opencode server exited with code {self._process.returncode}")
            try:
                await client.get("/config", timeout=2.0)
                return
            except httpx.TransportError:
                await asyncio.sleep(0.25)
        await self._stop_server()
        raise ProviderUnavailableError(
            f"opencode server did not start within {self.config.startup_timeout_s:.0f}s"
        )

    async def _stop_server(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    async def cleanup(self) -> None:
        await super().cleanup()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await self._stop_server()

    async def _ensure_session(self, session_key: str) -> str:
        assert self._client is not None
        session_id = self.sessions.get_token(session_key)
        if session_id:
            return session_id
        generation = self.sessions.generation(session_key)
        response = await self._client.post("/session", json={})
        response.raise_for_status()
        session_id = str(response.json()["id"])
        self.sessions.set_token(session_key, session_id, generation)
        logger.debug(f"[opencode] Created session {session_id} for {session_key}")
        return session_id

    def _parts(
        self,
        session_key: str,
        session_id: str,
        prompt: str,
        system_prompt: str | None,
        image: ImageAttachment | None,
    ) -> list[dict[str, Any]]:
        text = prompt
        if system_prompt and self._primed.get(session_key) != session_id:
            text = f"[System Instructions]\n{system_prompt}\n\n[User Message]\n{prompt}"
            self._primed[session_key] = session_id
        parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
        if image is not None:
            parts.append({
                "type": "file",
                "mime": image.media_type,
                "url": f"data:{image.media_type};base64,{image.to_base64()}",
            })
        return parts

    async def query(
        self,
        prompt: str,
        session_key: str,
        *,
        image: ImageAttachment | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        tools: "ToolRegistry | None" = None,
        tool_context: "ToolContext | None" = None,
        can_use_tool: CanUseTool | None = None,
    ) -> AsyncIterator[ProviderEvent]:
        signal = self._begin(session_key)
        normalizer: OpencodeStreamNormalizer | None = None
        try:
            await self.initialize()
            assert self._client is not None
            session_id = await self._ensure_session(session_key)
            self._running[session_key] = session_id
            provider_id, _, model_id = (model or self.get_model()).partition("/")
            normalizer = OpencodeStreamNormalizer(session_id)

            async with self._client.stream("GET", "/event") as stream:
                response = await self._client.post(
                    f"/session/{session_id}/prompt_async",
                    json={
                        "model": {"providerID": provider_id, "modelID": model_id},
                        "parts": self._parts(session_key, session_id, prompt, system_prompt, image),
                    },
                )
                response.raise_for_status()
                async for payload in self._until_aborted(iter_sse(stream.aiter_lines()), signal):
                    for event in normalizer.feed(payload):
                        yield event
                    if normalizer.finished:
                        break
        except asyncio.CancelledError:
            raise
        except (httpx.HTTPError, ProviderUnavailableError, KeyError, ValueError) as e:
            if signal.is_set():
                yield ProviderEvent(type="aborted")
                return
            logger.error(f"[opencode] Query failed for {session_key}: {e}")
            yield ProviderEvent(type="error", error=str(e))
            return
        finally:
            self._running.pop(session_key, None)
            self._end(session_key, signal)

        if signal.is_set():
            yield ProviderEvent(type="aborted")
        elif normalizer is not None and not normalizer.failed:
            yield ProviderEvent(type="done")

    def _on_abort(self, session_key: str) -> None:
        session_id = self._running.get(session_key)
        if session_id and self._client is not None:
            self._spawn(self._abort_remote(session_id))

    async def _abort_remote(self, session_id: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.post(f"/session/{session_id}/abort")
        except httpx.HTTPError as e:
            logger.debug(f"[opencode] Abort request failed for {session_id}: {e}")
