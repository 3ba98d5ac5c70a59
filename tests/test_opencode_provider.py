import json
from typing import Any

import httpx

from clawgate.config.schema import OpencodeProviderConfig
from clawgate.providers.opencode_provider import OpencodeProvider, OpencodeStreamNormalizer, iter_sse
from clawgate.session.manager import SessionRegistry


def _text(part_id: str, message_id: str, text: str, session: str = "ses_1") -> dict[str, Any]:
    return {
        "type": "message.part.updated",
        "properties": {
            "part": {"id": part_id, "messageID": message_id, "sessionID": session, "type": "text", "text": text}
        },
    }


def _tool(call_id: str, status: str, **state: Any) -> dict[str, Any]:
    return {
        "type": "message.part.updated",
        "properties": {
            "part": {
                "id": f"prt_{call_id}",
                "messageID": "msg_assistant",
                "sessionID": "ses_1",
                "type": "tool",
                "tool": "bash",
                "callID": call_id,
                "state": {"status": status, **state},
            }
        },
    }


def test_normalizer_skips_prompt_echo_and_emits_deltas() -> None:
    norm = OpencodeStreamNormalizer("ses_1")

    assert norm.feed(_text("prt_user", "msg_user", "hi there")) == []
    first = norm.feed(_text("prt_a", "msg_assistant", "Hel"))
    second = norm.feed(_text("prt_a", "msg_assistant", "Hello"))
    repeat = norm.feed(_text("prt_a", "msg_assistant", "Hello"))

    assert [e.text for e in first] == ["Hel"]
    assert [e.text for e in second] == ["lo"]
    assert repeat == []


def test_normalizer_ignores_other_sessions() -> None:
    norm = OpencodeStreamNormalizer("ses_1")
    norm.feed(_text("prt_user", "msg_user", "prompt"))

    assert norm.feed(_text("prt_x", "msg_x", "not ours", session="ses_2")) == []
    assert norm.feed({"type": "session.idle", "properties": {"sessionID": "ses_2"}}) == []
    assert norm.finished is False


def test_normalizer_announces_each_tool_once() -> None:
    norm = OpencodeStreamNormalizer("ses_1")

    assert norm.feed(_tool("call_1", "pending")) == []
    running = norm.feed(_tool("call_1", "running", input={"command": "ls"}))
    again = norm.feed(_tool("call_1", "running", input={"command": "ls"}))
    done = norm.feed(_tool("call_1", "completed", input={"command": "ls"}, output="a.txt"))

    assert [(e.type, e.tool_name, e.tool_input) for e in running] == [("tool_use", "bash", {"command": "ls"})]
    assert again == []
    assert [(e.type, e.tool_id, e.result) for e in done] == [("tool_result", "call_1", "a.txt")]


def test_normalizer_reports_session_errors() -> None:
    norm = OpencodeStreamNormalizer("ses_1")
    events = norm.feed({
        "type": "session.error",
        "properties": {"sessionID": "ses_1", "error": {"name": "ProviderAuthError", "data": {"message": "bad key"}}},
    })

    assert [(e.type, e.error) for e in events] == [("error", "bad key")]
    assert norm.finished and norm.failed


async def test_iter_sse_parses_data_lines_and_skips_garbage() -> None:
    async def lines():
        for line in [
            "event: message",
            'data: {"type": "a"}',
            "",
            "data: not json",
            "",
            ": keepalive",
            'data: {"type":',
            'data: "b"}',
        ]:
            yield line

    assert [p async for p in iter_sse(lines())] == [{"type": "a"}, {"type": "b"}]


def _sse(events: list[dict[str, Any]]) -> bytes:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


async def test_query_streams_run_and_keeps_session_affinity() -> None:
    requests: list[tuple[str, str, Any]] = []
    stream = [
        {"type": "server.connected", "properties": {}},
        _text("prt_user", "msg_user", "echo"),
        _text("prt_a", "msg_assistant", "Done"),
        _tool("call_1", "completed", input={"command": "ls"}, output="ok"),
        _text("prt_a", "msg_assistant", "Done."),
        {"type": "session.idle", "properties": {"sessionID": "ses_1"}},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        requests.append((request.method, request.url.path, body))
        if request.url.path == "/session":
            return httpx.Response(200, json={"id": "ses_1"})
        if request.url.path == "/event":
            return httpx.Response(200, content=_sse(stream), headers={"content-type": "text/event-stream"})
        return httpx.Response(204)

    sessions = SessionRegistry()
    provider = OpencodeProvider(OpencodeProviderConfig(), sessions, transport=httpx.MockTransport(handler))

    events = [e async for e in provider.query("list files", "clawgate:telegram:1", system_prompt="Be brief")]

    assert [e.type for e in events] == ["text_delta", "tool_use", "tool_result", "text_delta", "done"]
    assert "".join(e.text for e in events if e.type == "text_delta") == "Done."
    assert sessions.get_token("clawgate:telegram:1") == "ses_1"

    prompt = next(body for method, path, body in requests if path == "/session/ses_1/prompt_async")
    assert prompt["model"] == {"providerID": "opencode", "modelID": "gpt-5-nano"}
    assert prompt["parts"][0]["text"].startswith("[System Instructions]\nBe brief")

    requests.clear()
    _ = [e async for e in provider.query("again", "clawgate:telegram:1", system_prompt="Be brief")]
    paths = [path for _, path, _ in requests]
    assert "/session" not in paths
    prompt = next(body for method, path, body in requests if path == "/session/ses_1/prompt_async")
    assert prompt["parts"][0]["text"] == "again"
    assert provider.is_active("clawgate:telegram:1") is False

    await provider.cleanup()


async def test_query_reports_http_failure_as_error_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "down"})

    provider = OpencodeProvider(OpencodeProviderConfig(), SessionRegistry(), transport=httpx.MockTransport(handler))
    events = [e async for e in provider.query("hi", "clawgate:telegram:1")]

    assert [e.type for e in events] == ["error"]
    assert "500" in (events[0].error or "")
    await provider.cleanup()


async def test_reset_session_is_primed_again_and_old_priming_dropped() -> None:
    created: list[str] = []
    prompts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/session":
            created.append(f"ses_{len(created) + 1}")
            return httpx.Response(200, json={"id": created[-1]})
        if request.url.path == "/event":
            idle = {"type": "session.idle", "properties": {"sessionID": created[-1]}}
            return httpx.Response(200, content=_sse([idle]), headers={"content-type": "text/event-stream"})
        if request.url.path.endswith("/prompt_async"):
            prompts.append(json.loads(request.content)["parts"][0]["text"])
        return httpx.Response(204)

    sessions = SessionRegistry()
    provider = OpencodeProvider(OpencodeProviderConfig(), sessions, transport=httpx.MockTransport(handler))

    for _ in range(3):
        _ = [e async for e in provider.query("hi", "clawgate:telegram:1", system_prompt="Be brief")]
        sessions.reset("clawgate:telegram:1")

    assert created == ["ses_1", "ses_2", "ses_3"]
    assert all(p.startswith("[System Instructions]\nBe brief") for p in prompts)
    assert provider._primed == {"clawgate:telegram:1": "ses_3"}
    await provider.cleanup()
