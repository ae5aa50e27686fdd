"""Tests for the Anthropic/OpenAI transports using fake SDK clients."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from agentloop.errors import ModelCallError
from agentloop.model import estimate_cost, response_cost
from agentloop.providers import (
    ANTHROPIC_PRICING,
    AnthropicModelClient,
    OpenAIModelClient,
    create_model_client,
    provider_from_model,
)
from agentloop.schemas import Message, ModelRequest, ModelResponse, ModelUsage, Role, ToolCallRequest


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


def _conversation() -> list[Message]:
    return [
        Message(role=Role.USER, content="[Iteration 1/5]"),
        Message(
            role=Role.ASSISTANT,
            content="Looking.",
            tool_calls=[ToolCallRequest(id="t1", name="screenshot", arguments={"fullPage": False})],
        ),
        Message(role=Role.TOOL, tool_call_id="t1", name="screenshot", content="{}", images=["QUJD"]),
        Message(role=Role.SYSTEM, content="[System Nudge]: try again"),
        Message(role=Role.USER, content="[Iteration 2/5]"),
    ]


def _request(**overrides: Any) -> ModelRequest:
    data: dict[str, Any] = {
        "model": "claude-sonnet-4-20250514",
        "system_prompt": "You are an agent.",
        "messages": _conversation(),
        "tools": [{"name": "bash", "description": "Run.", "parameters": {"type": "object", "properties": {}}}],
    }
    data.update(overrides)
    return ModelRequest(**data)


class _FakeAnthropicMessages:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._response = response
        self._error = error

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return self._response


def test_provider_from_model() -> None:
    assert provider_from_model("claude-sonnet-4-20250514") == "anthropic"
    assert provider_from_model("gpt-4.1-mini") == "openai"
    assert provider_from_model("o3") == "openai"
    assert provider_from_model("llama3") == "unknown"


def test_create_model_client() -> None:
    assert isinstance(create_model_client("anthropic", api_key="k"), AnthropicModelClient)
    assert isinstance(create_model_client("OpenAI", api_key="k"), OpenAIModelClient)
    with pytest.raises(ValueError):
        create_model_client("mistral")


def test_estimate_cost_uses_longest_prefix() -> None:
    usage = ModelUsage(input_tokens=1_000_000, output_tokens=1_000_000)
    pricing = {"gpt-4o": (2.5, 10.0), "gpt-4o-mini": (0.15, 0.6)}
    assert estimate_cost(pricing, "gpt-4o-mini-2024", usage) == pytest.approx(0.75)
    assert estimate_cost(pricing, "gpt-4o-2024", usage) == pytest.approx(12.5)
    assert estimate_cost(pricing, "unknown", usage) == 0.0


def test_response_cost_prefers_reported_cost() -> None:
    client = AnthropicModelClient("k", client=object())
    usage = ModelUsage(input_tokens=1_000_000, output_tokens=0)
    assert response_cost(client, "claude-sonnet-4", ModelResponse(usage=usage, cost=0.5)) == 0.5
    assert response_cost(client, "claude-sonnet-4", ModelResponse(usage=usage)) == pytest.approx(
        ANTHROPIC_PRICING["claude-sonnet-4"][0]
    )
    assert response_cost(object(), "m", ModelResponse(usage=usage)) == 0.0


class TestAnthropic:
    def test_build_request_shapes_conversation(self):
        client = AnthropicModelClient("k", client=object(), max_output_tokens=1234)
        kwargs = client.build_request(_request())

        assert kwargs["system"] == "You are an agent."
        assert kwargs["max_tokens"] == 1234
        assert kwargs["tools"][0]["input_schema"] == {"type": "object", "properties": {}}
        roles = [m["role"] for m in kwargs["messages"]]
        assert roles == ["user", "assistant", "user"]

        assistant = kwargs["messages"][1]["content"]
        assert assistant[1] == {"type": "tool_use", "id": "t1", "name": "screenshot", "input": {"fullPage": False}}

        # Tool result, nudge and the next header are merged into one user turn.
        final = kwargs["messages"][2]["content"]
        assert final[0]["type"] == "tool_result"
        assert final[0]["tool_use_id"] == "t1"
        assert final[0]["content"][1]["source"]["data"] == "QUJD"
        assert final[1]["text"] == "[System Nudge]: try again"
        assert final[2]["text"] == "[Iteration 2/5]"

    def test_complete_parses_text_tools_and_usage(self):
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="I'll list files."),
                SimpleNamespace(type="tool_use", id="tu_1", name="bash", input={"command": "ls"}),
            ],
            usage=SimpleNamespace(input_tokens=120, output_tokens=30),
            model="claude-sonnet-4-20250514",
            stop_reason="tool_use",
        )
        messages = _FakeAnthropicMessages(response)
        client = AnthropicModelClient(client=SimpleNamespace(messages=messages))
        parsed = _run(client.complete(_request(max_output_tokens=500)))

        assert messages.calls[0]["max_tokens"] == 500
        assert parsed.text == "I'll list files."
        assert parsed.tool_calls == [ToolCallRequest(id="tu_1", name="bash", arguments={"command": "ls"})]
        assert parsed.usage.input_tokens == 120
        assert parsed.stop_reason == "tool_use"

    def test_sdk_errors_become_model_call_errors(self):
        messages = _FakeAnthropicMessages(error=ConnectionError("network down"))
        client = AnthropicModelClient(client=SimpleNamespace(messages=messages))
        with pytest.raises(ModelCallError, match="network down"):
            _run(client.complete(_request()))

    def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
            AnthropicModelClient()._get_client()


class _FakeCompletions:
    def __init__(self, response: Any) -> None:
        self.calls: list[dict[str, Any]] = []
        self._response = response

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return self._response


def _openai_response(arguments: str) -> Any:
    call = SimpleNamespace(id="call_9", function=SimpleNamespace(name="bash", arguments=arguments))
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=None, tool_calls=[call]),
                finish_reason="tool_calls",
            )
        ],
        usage=SimpleNamespace(prompt_tokens=80, completion_tokens=12),
        model="gpt-4.1",
    )


class TestOpenAI:
    def test_convert_messages_moves_images_after_tool_block(self):
        out = OpenAIModelClient.convert_messages("sys", _conversation())
        assert [m["role"] for m in out] == ["system", "user", "assistant", "tool", "user", "system", "user"]
        assistant = out[2]
        assert assistant["tool_calls"][0]["function"] == {
            "name": "screenshot",
            "arguments": json.dumps({"fullPage": False}),
        }
        assert out[3] == {"role": "tool", "tool_call_id": "t1", "content": "{}"}
        image_part = out[4]["content"][1]
        assert image_part["image_url"]["url"] == "data:image/jpeg;base64,QUJD"

    def test_build_request(self):
        client = OpenAIModelClient("k", client=object())
        kwargs = client.build_request(_request(model="gpt-4.1", max_output_tokens=256))
        assert kwargs["max_completion_tokens"] == 256
        assert kwargs["tools"][0]["function"]["name"] == "bash"
        assert "max_completion_tokens" not in client.build_request(_request(model="gpt-4.1"))

    def test_complete_parses_tool_calls(self):
        completions = _FakeCompletions(_openai_response('{"command": "ls"}'))
        client = OpenAIModelClient(client=SimpleNamespace(chat=SimpleNamespace(completions=completions)))
        parsed = _run(client.complete(_request(model="gpt-4.1")))

        assert parsed.text == ""
        assert parsed.tool_calls[0].arguments == {"command": "ls"}
        assert parsed.usage.output_tokens == 12
        assert client.estimate_cost("gpt-4.1", parsed.usage) == pytest.approx((80 * 2.0 + 12 * 8.0) / 1e6)

    def test_non_json_arguments_are_preserved(self):
        parsed = OpenAIModelClient.parse_response(_openai_response("{not json"))
        assert parsed.tool_calls[0].arguments == {"_raw": "{not json"}

    def test_no_choices_is_an_error(self):
        with pytest.raises(ModelCallError):
            OpenAIModelClient.parse_response(SimpleNamespace(choices=[]))
