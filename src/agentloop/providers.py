"""Model transports backed by the Anthropic and OpenAI SDKs.

Both adapters translate the provider-neutral conversation into the SDK's
message format, run the blocking SDK call in a worker thread, and normalise
the reply into a :class:`~agentloop.schemas.ModelResponse`. Costs are
estimated from per-million-token price tables.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from agentloop.errors import ModelCallError
from agentloop.model import ModelClient
from agentloop.schemas import (
    Message,
    ModelRequest,
    ModelResponse,
    ModelUsage,
    Role,
    ToolCallRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 8192

# USD per million tokens (input, output), matched by longest model-name prefix.
ANTHROPIC_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4": (15.0, 75.0),
    "claude-sonnet-4": (3.0, 15.0),
    "claude-haiku-4": (1.0, 5.0),
    "claude-3-7-sonnet": (3.0, 15.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-3-5-haiku": (0.8, 4.0),
    "claude-3-opus": (15.0, 75.0),
    "claude-3-haiku": (0.25, 1.25),
}

OPENAI_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4.1": (2.0, 8.0),
    "gpt-4.1-mini": (0.4, 1.6),
    "gpt-4.1-nano": (0.1, 0.4),
    "gpt-5": (1.25, 10.0),
    "gpt-5-mini": (0.25, 2.0),
    "gpt-5-nano": (0.05, 0.4),
    "o3": (2.0, 8.0),
    "o4-mini": (1.1, 4.4),
}


def provider_from_model(model: str) -> str:
    """Determine the provider from a model name string."""
    m = (model or "").lower().strip()
    if any(k in m for k in ("claude", "opus", "sonnet", "haiku")):
        return "anthropic"
    if "gpt" in m or m.startswith(("o1", "o3", "o4")):
        return "openai"
    return "unknown"


def _merge_consecutive(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1]["content"].extend(msg["content"])
        else:
            merged.append({"role": msg["role"], "content": list(msg["content"])})
    return merged


# ── Anthropic ─────────────────────────────────────────────────────

class AnthropicModelClient(ModelClient):
    """Messages API transport.

    System-role conversation entries (nudges) are sent as user text, since the
    Messages API only accepts a top-level system prompt.
    """

    name = "anthropic"
    pricing = ANTHROPIC_PRICING

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: Any = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> None:
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self._client: Any = client

    def _get_client(self) -> Any:
        """Lazy-initialize the Anthropic client."""
        if self._client is None:
            try:
                from anthropic import Anthropic
            except ImportError as exc:
                raise RuntimeError(
                    "Anthropic SDK is required. Install with: pip install anthropic"
                ) from exc
            api_key = self.api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise RuntimeError(
                    "ANTHROPIC_API_KEY is not set. Set it in your environment or .env file."
                )
            self._client = Anthropic(api_key=api_key)
        return self._client

    @staticmethod
    def _convert_message(message: Message) -> dict[str, Any]:
        if message.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append(
                    {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                )
            if not blocks:
                blocks.append({"type": "text", "text": "(no response)"})
            return {"role": "assistant", "content": blocks}

        if message.role == Role.TOOL:
            content: list[dict[str, Any]] = [{"type": "text", "text": message.content or "(empty)"}]
            for image in message.images:
                content.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": "image/jpeg", "data": image},
                    }
                )
            return {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id or "",
                        "content": content,
                    }
                ],
            }

        return {"role": "user", "content": [{"type": "text", "text": message.content or "(empty)"}]}

    def build_request(self, request: ModelRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens or self.max_output_tokens,
            "system": request.system_prompt,
            "messages": _merge_consecutive([self._convert_message(m) for m in request.messages]),
        }
        if request.tools:
            kwargs["tools"] = [
                {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
                }
                for t in request.tools
            ]
        return kwargs

    @staticmethod
    def parse_response(response: Any) -> ModelResponse:
        texts: list[str] = []
        calls: list[ToolCallRequest] = []
        for block in getattr(response, "content", None) or []:
            block_type = getattr(block, "type", "")
            if block_type == "text":
                text = getattr(block, "text", "")
                if text:
                    texts.append(text)
            elif block_type == "tool_use":
                calls.append(
                    ToolCallRequest(
                        id=getattr(block, "id", "") or "",
                        name=getattr(block, "name", ""),
                        arguments=dict(getattr(block, "input", None) or {}),
                    )
                )
        usage = getattr(response, "usage", None)
        return ModelResponse(
            text="\n".join(texts),
            tool_calls=calls,
            usage=ModelUsage(
                input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            ),
            model=getattr(response, "model", None),
            stop_reason=getattr(response, "stop_reason", None),
        )

    async def complete(self, request: ModelRequest) -> ModelResponse:
        client = self._get_client()
        kwargs = self.build_request(request)
        try:
            response = await asyncio.to_thread(client.messages.create, **kwargs)
        except Exception as exc:
            raise ModelCallError(f"Anthropic request failed: {exc}") from exc
        return self.parse_response(response)


# ── OpenAI ────────────────────────────────────────────────────────

class OpenAIModelClient(ModelClient):
    """Chat Completions transport with function calling.

    Screenshots attached to tool results are forwarded in a user message that
    follows the block of tool messages, since tool messages carry text only.
    """

    name = "openai"
    pricing = OPENAI_PRICING

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: Any = None,
        max_output_tokens: int | None = None,
    ) -> None:
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self._client: Any = client

    def _get_client(self) -> Any:
        """Lazy-initialize the OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError as exc:
                raise RuntimeError("OpenAI SDK is required. Install with: pip install openai") from exc
            api_key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is not set. Set it in your environment or .env file.")
            self._client = OpenAI(api_key=api_key)
        return self._client

    @staticmethod
    def convert_messages(system_prompt: str, messages: list[Message]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        pending_images: list[str] = []

        def _flush_images() -> None:
            if not pending_images:
                return
            parts: list[dict[str, Any]] = [{"type": "text", "text": "Screenshots from the tool results above:"}]
            parts.extend(
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{img}"}}
                for img in pending_images
            )
            out.append({"role": "user", "content": parts})
            pending_images.clear()

        for msg in messages:
            if msg.role == Role.TOOL:
                out.append({"role": "tool", "tool_call_id": msg.tool_call_id or "", "content": msg.content})
                pending_images.extend(msg.images)
                continue
            _flush_images()
            if msg.role == Role.ASSISTANT:
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in msg.tool_calls
                    ]
                out.append(entry)
            elif msg.role == Role.SYSTEM:
                out.append({"role": "system", "content": msg.content})
            else:
                out.append({"role": "user", "content": msg.content})
        _flush_images()
        return out

    def build_request(self, request: ModelRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self.convert_messages(request.system_prompt, request.messages),
        }
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t.get("description", ""),
                        "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                    },
                }
                for t in request.tools
            ]
        max_tokens = request.max_output_tokens or self.max_output_tokens
        if max_tokens:
            kwargs["max_completion_tokens"] = max_tokens
        return kwargs

    @staticmethod
    def parse_response(response: Any) -> ModelResponse:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ModelCallError("OpenAI response contained no choices")
        choice = choices[0]
        message = choice.message
        calls: list[ToolCallRequest] = []
        for call in getattr(message, "tool_calls", None) or []:
            raw = getattr(call.function, "arguments", "") or "{}"
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Tool call %s had non-JSON arguments", call.function.name)
                arguments = {"_raw": raw}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
            calls.append(ToolCallRequest(id=call.id or "", name=call.function.name, arguments=arguments))
        usage = getattr(response, "usage", None)
        return ModelResponse(
            text=getattr(message, "content", None) or "",
            tool_calls=calls,
            usage=ModelUsage(
                input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            ),
            model=getattr(response, "model", None),
            stop_reason=getattr(choice, "finish_reason", None),
        )

    async def complete(self, request: ModelRequest) -> ModelResponse:
        client = self._get_client()
        kwargs = self.build_request(request)
        try:
            response = await asyncio.to_thread(client.chat.completions.create, **kwargs)
        except Exception as exc:
            raise ModelCallError(f"OpenAI request failed: {exc}") from exc
        return self.parse_response(response)


def create_model_client(provider: str, *, api_key: str | None = None) -> ModelClient:
    """Build the transport for ``provider`` (``anthropic`` or ``openai``)."""
    key = (provider or "").strip().lower()
    if key == "anthropic":
        return AnthropicModelClient(api_key)
    if key == "openai":
        return OpenAIModelClient(api_key)
    raise ValueError(f"Unknown provider '{provider}'. Available: anthropic, openai")
