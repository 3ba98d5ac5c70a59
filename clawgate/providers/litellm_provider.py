"""LiteLLM provider implementation for OpenAI-compatible endpoints."""

import asyncio
import json
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator

import litellm
from litellm import acompletion
from loguru import logger

from clawgate.bus.events import ImageAttachment
from clawgate.config.schema import LiteLLMProviderConfig
from clawgate.providers.base import BaseProvider, CanUseTool, ModelOption, ProviderEvent
from clawgate.session.manager import SessionRegistry

if TYPE_CHECKING:
    from clawgate.agent.tools.base import ToolContext
    from clawgate.agent.tools.registry import ToolRegistry


class LiteLLMProvider(BaseProvider):
    """
    Backend on LiteLLM: OpenRouter, Anthropic, OpenAI, vLLM and the rest.

    These APIs are stateless, so the session token is a locally minted
    conversation id and the transcript is kept in-process per session, tied
    to that id. A session whose token was reset or swept starts over and its
    old transcript is dropped. The tool loop runs here: tool calls go
    through the ToolRegistry, gated by the permission callback.
    """

    name = "litellm"

    def __init__(self, config: LiteLLMProviderConfig, sessions: SessionRegistry):
        super().__init__(config, sessions, default_model=config.model)
        self._histories: dict[str, tuple[str, list[dict[str, Any]]]] = {}
        litellm.suppress_debug_info = True

    def get_available_models(self) -> list[ModelOption]:
        ids: list[str] = []
        for model_id in [self.config.model, *self.config.models]:
            if model_id and model_id not in ids:
                ids.append(model_id)
        return [ModelOption(id=model_id, label=model_id.split("/")[-1]) for model_id in ids]

    def _history_for(self, session_key: str) -> list[dict[str, Any]]:
        token = self.sessions.get_token(session_key)
        entry = self._histories.get(session_key)
        if token and entry is not None and entry[0] == token:
            return entry[1]
        token = uuid.uuid4().hex
        self.sessions.set_token(session_key, token)
        history: list[dict[str, Any]] = []
        self._histories[session_key] = (token, history)
        return history

    async def cleanup(self) -> None:
        await super().cleanup()
        self._histories.clear()

    @staticmethod
    def _user_message(prompt: str, image: ImageAttachment | None) -> dict[str, Any]:
        if image is None:
            return {"role": "user", "content": prompt}
        return {
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": f"data:{image.media_type};base64,{image.to_base64()}"}},
                {"type": "text", "text": prompt or "What's in this image?"},
            ],
        }

    def _build_completion_kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self.get_model(),
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": True,
        }
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return kwargs

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
        history = self._history_for(session_key)
        turn: list[dict[str, Any]] = [self._user_message(prompt, image)]
        prefix = [{"role": "system", "content": system_prompt}] if system_prompt else []
        window = history[-self.config.max_history_messages:] if self.config.max_history_messages else []
        definitions = tools.get_definitions() if tools is not None and len(tools) else None

        try:
            for _ in range(self.config.max_tool_iterations):
                stream = await acompletion(**self._build_completion_kwargs(prefix + window + turn, definitions, model))
                content_parts: list[str] = []
                accumulator: dict[int, dict[str, str]] = {}
                async for chunk in self._until_aborted(stream, signal):
                    choice = self._get_first_choice(chunk)
                    if choice is None:
                        continue
                    delta = self._obj_get(choice, "delta")
                    if delta is None:
                        continue
                    text = self._extract_delta_text(delta)
                    if text:
                        content_parts.append(text)
                        yield ProviderEvent(type="text_delta", text=text)
                    self._accumulate_tool_calls(delta, accumulator)

                if signal.is_set():
                    yield ProviderEvent(type="aborted")
                    return

                calls = self._parse_stream_tool_calls(accumulator)
                assistant: dict[str, Any] = {"role": "assistant", "content": "".join(content_parts)}
                if calls:
                    assistant["tool_calls"] = [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {"name": call["name"], "arguments": json.dumps(call["arguments"])},
                        }
                        for call in calls
                    ]
                turn.append(assistant)
                if not calls:
                    break

                for call in calls:
                    yield ProviderEvent(
                        type="tool_use",
                        tool_name=call["name"],
                        tool_input=call["arguments"],
                        tool_id=call["id"],
                    )
                    if tools is None or tool_context is None:
                        result = f"Error: Tool '{call['name']}' not found"
                    else:
                        result = await tools.execute(call["name"], call["arguments"], tool_context, can_use_tool)
                    yield ProviderEvent(type="tool_result", tool_id=call["id"], result=result)
                    turn.append({
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "name": call["name"],
                        "content": result,
                    })
                    if signal.is_set():
                        yield ProviderEvent(type="aborted")
                        return
            else:
                logger.warning(f"[litellm] Tool iteration limit reached for {session_key}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if signal.is_set():
                yield ProviderEvent(type="aborted")
                return
            logger.error(f"[litellm] Completion failed for {session_key}: {e}")
            yield ProviderEvent(type="error", error=f"Error calling LLM: {str(e)}")
            return
        finally:
            self._end(session_key, signal)
            if image is not None:
                turn[0] = {"role": "user", "content": f"[Image] {prompt}"}
            history.extend(turn)
            limit = self.config.max_history_messages
            if limit and len(history) > limit:
                del history[: len(history) - limit]

        yield ProviderEvent(type="done")

    @staticmethod
    def _obj_get(obj: Any, key: str, default: Any = None) -> Any:
        if obj is None:
            return default
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)

    def _get_first_choice(self, chunk: Any) -> Any:
        choices = self._obj_get(chunk, "choices", [])
        if isinstance(choices, list) and choices:
            return choices[0]
        return None

    def _extract_delta_text(self, delta: Any) -> str:
        content = self._obj_get(delta, "content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            out: list[str] = []
            for part in content:
                text = self._obj_get(part, "text")
                if isinstance(text, str):
                    out.append(text)
            return "".join(out)
        return ""

    def _accumulate_tool_calls(self, delta: Any, accumulator: dict[int, dict[str, str]]) -> None:
        tool_calls = self._obj_get(delta, "tool_calls")
        if not isinstance(tool_calls, list):
            return
        for tc in tool_calls:
            idx = int(self._obj_get(tc, "index", len(accumulator)) or 0)
            entry = accumulator.setdefault(idx, {"id": "", "name": "", "arguments": ""})
            tc_id = self._obj_get(tc, "id")
            if isinstance(tc_id, str) and tc_id:
                entry["id"] = tc_id

            function = self._obj_get(tc, "function", {}) or {}
            name_part = self._obj_get(function, "name")
            if isinstance(name_part, str) and name_part:
                entry["name"] = name_part if not entry["name"] else entry["name"] + name_part

            args_part = self._obj_get(function, "arguments")
            if isinstance(args_part, str) and args_part:
                entry["arguments"] += args_part

    def _parse_stream_tool_calls(self, accumulator: dict[int, dict[str, str]]) -> list[dict[str, Any]]:
        calls: list[dict[str, Any]] = []
        for idx in sorted(accumulator):
            entry = accumulator[idx]
            if not entry["name"]:
                continue
            calls.append({
                "id": entry["id"] or f"tool_{idx}",
                "name": entry["name"],
                "arguments": self._parse_tool_arguments(entry["arguments"]),
            })
        return calls

    @staticmethod
    def _parse_tool_arguments(raw: str) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
            return {"value": parsed}
        except json.JSONDecodeError:
            return {"raw": raw}
