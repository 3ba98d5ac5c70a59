from typing import Any

from clawgate.agent.tools.base import Tool, ToolContext
from clawgate.agent.tools.registry import ToolRegistry
from clawgate.providers.base import ToolDecision


class SampleTool(Tool):
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return "sample"

    @property
    def description(self) -> str:
        return "sample tool"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": 2},
                "count": {"type": "integer", "minimum": 1, "maximum": 10},
                "mode": {"type": "string", "enum": ["fast", "full"]},
                "meta": {
                    "type": "object",
                    "properties": {
                        "tag": {"type": "string"},
                        "flags": {
                            "type": "array",
                            "items": {"type": "string"},
                        },
                    },
                    "required": ["tag"],
                },
            },
            "required": ["query", "count"],
        }

    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        return "ok"


class BrokenTool(SampleTool):
    @property
    def name(self) -> str:
        return "broken"

    async def execute(self, context: ToolContext, **kwargs: Any) -> str:
        raise RuntimeError("disk full")


CTX = ToolContext(channel="telegram", chat_id="42", session_key="clawgate:telegram:42", run_id="r1")


def test_validate_params_missing_required() -> None:
    tool = SampleTool()
    errors = tool.validate_params({"query": "hi"})
    assert "missing required count" in "; ".join(errors)


def test_validate_params_type_and_range() -> None:
    tool = SampleTool()
    errors = tool.validate_params({"query": "hi", "count": 0})
    assert any("count must be >= 1" in e for e in errors)

    errors = tool.validate_params({"query": "hi", "count": "2"})
    assert any("count should be integer" in e for e in errors)


def test_validate_params_enum_and_min_length() -> None:
    tool = SampleTool()
    errors = tool.validate_params({"query": "h", "count": 2, "mode": "slow"})
    assert any("query must be at least 2 chars" in e for e in errors)
    assert any("mode must be one of" in e for e in errors)


def test_validate_params_nested_object_and_array() -> None:
    tool = SampleTool()
    errors = tool.validate_params(
        {
            "query": "hi",
            "count": 2,
            "meta": {"flags": [1, "ok"]},
        }
    )
    assert any("missing required meta.tag" in e for e in errors)
    assert any("meta.flags[0] should be string" in e for e in errors)


def test_validate_params_ignores_unknown_fields() -> None:
    tool = SampleTool()
    errors = tool.validate_params({"query": "hi", "count": 2, "extra": "x"})
    assert errors == []


def test_schema_uses_function_format() -> None:
    schema = SampleTool().to_schema()
    assert schema["type"] == "function"
    assert schema["function"]["name"] == "sample"
    assert schema["function"]["parameters"]["required"] == ["query", "count"]


async def test_registry_returns_validation_error() -> None:
    reg = ToolRegistry()
    reg.register(SampleTool())
    result = await reg.execute("sample", {"query": "hi"}, CTX)
    assert "Invalid parameters" in result


async def test_registry_unknown_tool() -> None:
    reg = ToolRegistry()
    result = await reg.execute("nope", {}, CTX)
    assert result == "Error: Tool 'nope' not found"


async def test_registry_denied_tool_does_not_run() -> None:
    reg = ToolRegistry()
    tool = SampleTool()
    reg.register(tool)

    async def deny(name: str, params: dict[str, Any]) -> ToolDecision:
        return ToolDecision(allow=False, message="User denied the action: no")

    result = await reg.execute("sample", {"query": "hello", "count": 2}, CTX, can_use_tool=deny)
    assert "was not allowed" in result
    assert "User denied the action: no" in result
    assert tool.calls == []


async def test_registry_applies_updated_input() -> None:
    reg = ToolRegistry()
    tool = SampleTool()
    reg.register(tool)

    async def rewrite(name: str, params: dict[str, Any]) -> ToolDecision:
        return ToolDecision(allow=True, updated_input={**params, "mode": "full"})

    result = await reg.execute("sample", {"query": "hello", "count": 2}, CTX, can_use_tool=rewrite)
    assert result == "ok"
    assert tool.calls == [{"query": "hello", "count": 2, "mode": "full"}]


async def test_registry_emits_sanitized_tool_events() -> None:
    reg = ToolRegistry()
    reg.register(BrokenTool())
    events: list[dict[str, Any]] = []

    async def collect(event: dict[str, Any]) -> None:
        events.append(event)

    reg.set_tool_event_callback(collect)
    result = await reg.execute("broken", {"query": "hello", "count": 2, "meta": {"tag": "x", "api_key": "s3cret"}}, CTX)

    assert result == "Error executing broken: disk full"
    assert [e["type"] for e in events] == ["tool_start", "tool_end"]
    assert events[0]["params"]["meta"]["api_key"] == "<redacted:sensitive>"
    assert events[1]["ok"] is False
    assert events[1]["run_id"] == "r1"
