import asyncio
import os
from types import SimpleNamespace
from typing import Any

import pytest
from claude_agent_sdk import AssistantMessage, ResultMessage, SystemMessage, TextBlock, ToolUseBlock

from clawgate.agent.tools.base import Tool, ToolContext
from clawgate.agent.tools.registry import ToolRegistry
from clawgate.config.schema import ClaudeProviderConfig, Config, LiteLLMProviderConfig
from clawgate.providers import available_providers, get_provider
from clawgate.providers.base import ToolDecision
from clawgate.providers.claude_provider import ClaudeProvider, _StreamState
from clawgate.providers.litellm_provider import LiteLLMProvider
from clawgate.session.manager import SessionRegistry

SESSION = "clawgate:telegram:42"
CTX = ToolContext(channel="telegram", chat_id="42", session_key=SESSION, run_id="r1")


def _chunk(content: str | None = None, tool_calls: list[dict[str, Any]] | None = None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


async def _stream(*chunks):
    for chunk in chunks:
        yield chunk


class ClockTool(Tool):
    @property
    def name(self) -> str:
        return "clock"

    @property
    def description(self) -> str:
        return "current time"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"tz": {"type": "string"}}, "required": ["tz"]}

    async def execute(self, context: ToolContext, tz: str, **kwargs: Any) -> str:
        return f"09:00 {tz}"


def test_factory_builds_each_variant(tmp_path) -> None:
    config = Config()
    config.agent.workspace = str(tmp_path)
    sessions = SessionRegistry()

    assert available_providers() == ["claude", "opencode", "litellm"]
    for name in available_providers():
        assert get_provider(f" {name.upper()} ", config, sessions).name == name
    with pytest.raises(ValueError):
        get_provider("gemini", config, sessions)


def test_find_model_by_number_id_or_label() -> None:
    provider = ClaudeProvider(ClaudeProviderConfig(), SessionRegistry())
    assert provider.find_model("2").id == "claude-opus-4-20250514"
    assert provider.find_model("haiku").label == "Haiku 4.5"
    assert provider.find_model("9") is None
    assert provider.get_model() == "claude-sonnet-4-5-20250929"


def test_claude_options_resume_token_and_permissions() -> None:
    sessions = SessionRegistry()
    sessions.set_token(SESSION, "sdk-session-1")
    provider = ClaudeProvider(ClaudeProviderConfig(), sessions)

    async def allow(name: str, params: dict[str, Any]) -> ToolDecision:
        return ToolDecision(allow=True)

    gated = provider.build_options(SESSION, system_prompt="be brief", can_use_tool=allow)
    assert gated.resume == "sdk-session-1"
    assert gated.system_prompt == "be brief"
    assert gated.can_use_tool is not None
    assert not gated.allowed_tools

    open_options = provider.build_options("clawgate:telegram:7")
    assert open_options.resume is None
    assert "Bash" in open_options.allowed_tools


def test_claude_translate_captures_token_and_blocks() -> None:
    sessions = SessionRegistry()
    provider = ClaudeProvider(ClaudeProviderConfig(), sessions)
    state = _StreamState()

    assert list(provider._translate(SystemMessage(subtype="init", data={"session_id": "abc"}), SESSION, state)) == []
    assert sessions.get_token(SESSION) == "abc"

    message = AssistantMessage(
        content=[TextBlock(text="Looking"), ToolUseBlock(id="tu_1", name="Bash", input={"command": "ls"})],
        model="claude-sonnet-4-5-20250929",
    )
    events = list(provider._translate(message, SESSION, state))
    assert [(e.type, e.text or e.tool_name) for e in events] == [("text_delta", "Looking"), ("tool_use", "Bash")]
    assert [e.type for e in provider._translate(message, SESSION, state)] == ["text_delta"]


def _gated_claude_client(gate: asyncio.Event, resumes: list[str | None]):
    class FakeClaudeClient:
        def __init__(self, options):
            resumes.append(options.resume)

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def query(self, prompt):
            pass

        async def receive_response(self):
            yield SystemMessage(subtype="init", data={"session_id": "old-ctx"})
            await gate.wait()
            yield AssistantMessage(content=[TextBlock(text="Finished")], model="claude-sonnet-4-5-20250929")
            yield ResultMessage(
                subtype="success",
                duration_ms=5,
                duration_api_ms=4,
                is_error=False,
                num_turns=1,
                session_id="old-ctx",
            )

        async def interrupt(self):
            pass

    return FakeClaudeClient


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.mark.parametrize(
    "forget",
    [lambda sessions: sessions.reset(SESSION), lambda sessions: sessions.clear_tokens()],
    ids=["reset", "clear_tokens"],
)
async def test_claude_token_stays_forgotten_when_run_finishes(monkeypatch, forget) -> None:
    gate = asyncio.Event()
    resumes: list[str | None] = []
    monkeypatch.setattr("clawgate.providers.claude_provider.ClaudeSDKClient", _gated_claude_client(gate, resumes))
    sessions = SessionRegistry()
    provider = ClaudeProvider(ClaudeProviderConfig(), sessions)

    async def consume():
        return [e async for e in provider.query("hi", SESSION)]

    run = asyncio.create_task(consume())
    await _until(lambda: sessions.get_token(SESSION) == "old-ctx")
    forget(sessions)
    gate.set()
    events = await run

    assert [e.type for e in events] == ["text_delta", "done"]
    assert sessions.get_token(SESSION) is None

    _ = [e async for e in provider.query("again", SESSION)]
    assert resumes == [None, None]


async def test_litellm_streams_text_and_keeps_history(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []

    async def fake_acompletion(**kwargs):
        calls.append(kwargs)
        return _stream(_chunk("Hi "), _chunk("there"))

    monkeypatch.setattr("clawgate.providers.litellm_provider.acompletion", fake_acompletion)
    sessions = SessionRegistry()
    provider = LiteLLMProvider(
        LiteLLMProviderConfig(model="openai/gpt-4o-mini", api_key="sk-test", api_base="https://example.invalid/v1"),
        sessions,
    )

    events = [e async for e in provider.query("hello", SESSION, system_prompt="sys")]
    assert [e.type for e in events] == ["text_delta", "text_delta", "done"]
    token = sessions.get_token(SESSION)
    assert token

    _ = [e async for e in provider.query("again", SESSION, system_prompt="sys")]
    assert sessions.get_token(SESSION) == token
    second = calls[1]
    assert [m["role"] for m in second["messages"]] == ["system", "user", "assistant", "user"]
    assert second["api_key"] == "sk-test"
    assert second["api_base"] == "https://example.invalid/v1"
    assert second["model"] == "openai/gpt-4o-mini"


async def test_litellm_runs_tools_through_registry(monkeypatch) -> None:
    responses = [
        _stream(
            _chunk(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "clock", "arguments": '{"tz"'}}]),
            _chunk(tool_calls=[{"index": 0, "function": {"arguments": ': "UTC"}'}}]),
        ),
        _stream(_chunk("It is 09:00.")),
    ]
    requests: list[dict[str, Any]] = []

    async def fake_acompletion(**kwargs):
        requests.append(kwargs)
        return responses.pop(0)

    monkeypatch.setattr("clawgate.providers.litellm_provider.acompletion", fake_acompletion)
    registry = ToolRegistry()
    registry.register(ClockTool())
    asked: list[str] = []

    async def can_use_tool(name: str, params: dict[str, Any]) -> ToolDecision:
        asked.append(name)
        return ToolDecision(allow=True)

    provider = LiteLLMProvider(LiteLLMProviderConfig(), SessionRegistry())
    events = [
        e async for e in provider.query("time?", SESSION, tools=registry, tool_context=CTX, can_use_tool=can_use_tool)
    ]

    assert [e.type for e in events] == ["tool_use", "tool_result", "text_delta", "done"]
    assert events[0].tool_input == {"tz": "UTC"}
    assert events[1].result == "09:00 UTC"
    assert asked == ["clock"]
    assert requests[0]["tools"][0]["function"]["name"] == "clock"
    assert requests[1]["messages"][-1] == {"role": "tool", "tool_call_id": "call_1", "name": "clock", "content": "09:00 UTC"}


async def test_litellm_failure_becomes_error_event(monkeypatch) -> None:
    async def fake_acompletion(**kwargs):
        raise RuntimeError("401 unauthorized")

    monkeypatch.setattr("clawgate.providers.litellm_provider.acompletion", fake_acompletion)
    provider = LiteLLMProvider(LiteLLMProviderConfig(), SessionRegistry())

    events = [e async for e in provider.query("hi", SESSION)]
    assert [e.type for e in events] == ["error"]
    assert "401 unauthorized" in events[0].error
    assert provider.is_active(SESSION) is False


async def test_litellm_abort_stops_stream(monkeypatch) -> None:
    async def endless():
        yield _chunk("partial")
        await asyncio.Event().wait()

    async def fake_acompletion(**kwargs):
        return endless()

    monkeypatch.setattr("clawgate.providers.litellm_provider.acompletion", fake_acompletion)
    provider = LiteLLMProvider(LiteLLMProviderConfig(), SessionRegistry())

    events = []
    async for event in provider.query("hi", SESSION):
        events.append(event)
        if event.type == "text_delta":
            assert provider.abort(SESSION) is True

    assert [e.type for e in events] == ["text_delta", "aborted"]
    assert provider.abort(SESSION) is False


def test_litellm_does_not_touch_process_env(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "before")
    LiteLLMProvider(LiteLLMProviderConfig(api_key="sk-test"), SessionRegistry())
    assert os.environ["OPENAI_API_KEY"] == "before"


async def test_litellm_reset_starts_a_fresh_transcript(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []

    async def fake_acompletion(**kwargs):
        calls.append(kwargs)
        return _stream(_chunk("ok"))

    monkeypatch.setattr("clawgate.providers.litellm_provider.acompletion", fake_acompletion)
    sessions = SessionRegistry()
    provider = LiteLLMProvider(LiteLLMProviderConfig(), sessions)

    for _ in range(5):
        _ = [e async for e in provider.query("hi", SESSION)]
        sessions.reset(SESSION)

    assert len(provider._histories) == 1
    assert [m["role"] for m in calls[-1]["messages"]] == ["user"]

    await provider.cleanup()
    assert provider._histories == {}
