"""Conversation compaction.

When the estimated context grows past the ceiling, older messages are folded
into a single summary message so the run can keep going. Recent messages are
kept verbatim; earlier summaries are never summarised again.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from agentloop.model import maybe_await, response_cost
from agentloop.prompts.catalog import PromptCatalog
from agentloop.schemas import CompactionConfig, Message, ModelRequest, Role, TokenUsage

logger = logging.getLogger(__name__)

_IMAGE_TOKENS = 1_000
_MAX_MESSAGE_CHARS = 2_000
_MAX_CONVERSATION_CHARS = 50_000
_SUMMARY_MAX_OUTPUT_TOKENS = 2_000
_ERROR_LINE_RE = re.compile(r"(?i)(?:error|failed)[:\s]+([^\n]{10,100})")


def message_chars(message: Message) -> int:
    chars = len(message.content)
    for call in message.tool_calls:
        chars += len(call.name) + len(str(call.arguments))
    return chars


def estimate_tokens(
    messages: Sequence[Message],
    system_prompt: str = "",
    *,
    chars_per_token: float = 4.0,
) -> int:
    """Rough token estimate: characters / ``chars_per_token`` plus a flat cost per image."""
    chars = len(system_prompt) + sum(message_chars(m) for m in messages)
    images = sum(len(m.images) for m in messages)
    return math.ceil(chars / chars_per_token) + images * _IMAGE_TOKENS


def largest_messages(
    messages: Sequence[Message],
    *,
    limit: int = 5,
    chars_per_token: float = 4.0,
) -> list[dict[str, Any]]:
    """The ``limit`` biggest messages, for context diagnostics."""
    ranked = sorted(messages, key=message_chars, reverse=True)[:limit]
    return [
        {
            "id": m.id,
            "role": m.role.value,
            "tokens": math.ceil(message_chars(m) / chars_per_token),
            "preview": m.content[:100],
        }
        for m in ranked
    ]


@dataclass
class CompactionOutcome:
    """Result of a compaction attempt. ``strategy`` is ``none`` when nothing changed."""

    messages: list[Message]
    strategy: str = "none"
    original_tokens: int = 0
    new_tokens: int = 0
    messages_summarized: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0

    @property
    def compacted(self) -> bool:
        return self.strategy != "none"


class ContextCompactor:
    """Folds older conversation into summary messages.

    Parameters
    ----------
    config:
        Thresholds and the number of recent messages kept verbatim.
    model_client:
        Transport used for model-written summaries; heuristic summaries are
        used when absent.
    model:
        Model name passed to the transport for summaries.
    """

    def __init__(
        self,
        config: CompactionConfig | None = None,
        *,
        model_client: Any = None,
        model: str = "",
        catalog: PromptCatalog | None = None,
    ) -> None:
        self.config = config or CompactionConfig()
        self.model_client = model_client
        self.model = model
        self.catalog = catalog or PromptCatalog()
        self._summary_cache: dict[str, str] = {}

    def estimate(self, messages: Sequence[Message], system_prompt: str = "") -> int:
        return estimate_tokens(messages, system_prompt, chars_per_token=self.config.chars_per_token)

    def needs_compaction(self, messages: Sequence[Message], system_prompt: str = "") -> bool:
        return self.estimate(messages, system_prompt) > self.config.max_context_tokens

    def _split(self, messages: Sequence[Message]) -> tuple[int, int]:
        """Return ``(start, end)`` of the slice to summarise (empty when start >= end)."""
        last_summary = -1
        for i, msg in enumerate(messages):
            if msg.is_summary:
                last_summary = i
        start = last_summary + 1
        end = len(messages) - self.config.keep_recent
        # The kept tail must not open with a tool result whose call was summarised away.
        while end > start and messages[end].role == Role.TOOL:
            end -= 1
        return start, end

    async def compact(self, messages: Sequence[Message], system_prompt: str = "") -> CompactionOutcome:
        """Summarise older messages when the estimate exceeds the ceiling."""
        messages = list(messages)
        original = self.estimate(messages, system_prompt)
        if original <= self.config.max_context_tokens:
            return CompactionOutcome(messages=messages, original_tokens=original, new_tokens=original)

        start, end = self._split(messages)
        if end - start < 1:
            logger.debug("Context over ceiling (%d tokens) but nothing left to summarise", original)
            return CompactionOutcome(messages=messages, original_tokens=original, new_tokens=original)

        older = messages[start:end]
        usage = TokenUsage()
        cost = 0.0
        strategy = "heuristic"
        summary: str | None = None

        if original > self.config.model_summary_threshold and self.model_client is not None:
            try:
                summary, usage, cost = await self._model_summary(older)
                strategy = "model"
            except Exception as exc:
                logger.warning("Model summary failed, falling back to heuristic summary: %s", exc)
        if summary is None:
            summary = self.heuristic_summary(older)

        compacted = [
            *messages[:start],
            Message(role=Role.USER, content=summary, is_summary=True),
            *messages[end:],
        ]
        new_tokens = self.estimate(compacted, system_prompt)
        logger.info(
            "Compacted context: %d -> %d tokens (%d messages summarised, %s)",
            original,
            new_tokens,
            len(older),
            strategy,
        )
        return CompactionOutcome(
            messages=compacted,
            strategy=strategy,
            original_tokens=original,
            new_tokens=new_tokens,
            messages_summarized=len(older),
            usage=usage,
            cost=cost,
        )

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def heuristic_summary(self, messages: Sequence[Message]) -> str:
        """Summarise tools, files, commands and errors without a model call."""
        facts = _collect_facts(messages)
        parts = [
            self.catalog.summary("heuristic_heading"),
            "",
            f"**Messages summarized:** {len(messages)}",
        ]
        if facts["tools"]:
            parts.append(f"**Tools used:** {', '.join(facts['tools'])}")
        if facts["files_written"]:
            parts.append(f"**Files modified:** {', '.join(facts['files_written'][:15])}")
        if facts["files_read"]:
            parts.append(f"**Files explored:** {', '.join(facts['files_read'][:15])}")
        if facts["commands"]:
            parts.append(f"**Commands run:** {'; '.join(facts['commands'][:5])}")
        if facts["errors"]:
            parts.append(f"**Errors seen:** {'; '.join(facts['errors'][:3])}")
        parts.extend(["", "---", self.catalog.summary("footer").format(count=len(messages))])
        return "\n".join(parts)

    async def _model_summary(self, messages: Sequence[Message]) -> tuple[str, TokenUsage, float]:
        key = hashlib.sha256(
            "\x1e".join(f"{m.id}:{m.role.value}:{m.content}" for m in messages).encode("utf-8")
        ).hexdigest()
        cached = self._summary_cache.get(key)
        if cached is not None:
            logger.debug("Using cached model summary")
            return cached, TokenUsage(), 0.0

        facts = _collect_facts(messages)
        metadata = "\n".join(
            line
            for line in (
                f"Messages being summarized: {len(messages)}",
                f"Tools used: {', '.join(facts['tools'])}" if facts["tools"] else "",
                f"Files modified: {', '.join(facts['files_written'][:20])}" if facts["files_written"] else "",
                f"Files read: {', '.join(facts['files_read'][:20])}" if facts["files_read"] else "",
                f"Errors encountered: {'; '.join(facts['errors'][:3])}" if facts["errors"] else "",
            )
            if line
        )
        request = ModelRequest(
            model=self.model,
            system_prompt=self.catalog.summary("system"),
            messages=[
                Message(
                    role=Role.USER,
                    content=self.catalog.summary("request").format(
                        metadata=metadata,
                        conversation=_render_conversation(messages),
                    ),
                )
            ],
            max_output_tokens=_SUMMARY_MAX_OUTPUT_TOKENS,
        )
        response = await maybe_await(self.model_client.complete(request))
        text = (response.text or "").strip()
        if not text:
            raise ValueError("model returned an empty summary")

        summary = "\n\n".join(
            [
                self.catalog.summary("model_heading"),
                text,
                "---",
                self.catalog.summary("footer").format(count=len(messages)),
            ]
        )
        self._summary_cache[key] = summary
        usage = TokenUsage(input=response.usage.input_tokens, output=response.usage.output_tokens)
        return summary, usage, response_cost(self.model_client, self.model, response)


def _render_conversation(messages: Sequence[Message]) -> str:
    blocks: list[str] = []
    for i, msg in enumerate(messages, start=1):
        content = msg.content
        if msg.tool_calls:
            calls = ", ".join(f"{c.name}({c.arguments})" for c in msg.tool_calls)
            content = f"{content}\n[tool calls] {calls}".strip()
        if len(content) > _MAX_MESSAGE_CHARS:
            content = content[:1_500] + "\n...[truncated]..." + content[-300:]
        blocks.append(f"[{msg.role.value.upper()} {i}]\n{content}")
    rendered = "\n\n---\n\n".join(blocks)
    if len(rendered) > _MAX_CONVERSATION_CHARS:
        rendered = rendered[:_MAX_CONVERSATION_CHARS] + "\n\n...[earlier messages truncated]..."
    return rendered


def _collect_facts(messages: Sequence[Message]) -> dict[str, list[str]]:
    tools: list[str] = []
    files_read: list[str] = []
    files_written: list[str] = []
    commands: list[str] = []
    errors: list[str] = []

    def _add(bucket: list[str], value: Any) -> None:
        text = str(value or "").strip()
        if text and text not in bucket:
            bucket.append(text)

    for msg in messages:
        for call in msg.tool_calls:
            _add(tools, call.name)
            args = call.arguments or {}
            if call.name == "writeFile":
                _add(files_written, args.get("path"))
            elif call.name == "readFile":
                _add(files_read, args.get("path"))
            elif call.name in {"bash", "startProcess"}:
                _add(commands, str(args.get("command") or "")[:80])
        if msg.role == Role.TOOL:
            for match in _ERROR_LINE_RE.finditer(msg.content[:2_000]):
                _add(errors, match.group(0)[:100])
                if len(errors) >= 5:
                    break

    return {
        "tools": tools,
        "files_read": files_read,
        "files_written": files_written,
        "commands": commands,
        "errors": errors,
    }
