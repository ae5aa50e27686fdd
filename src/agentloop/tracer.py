"""Append-only NDJSON execution trace.

Every event is one self-contained JSON object on its own line, written and
flushed immediately so the file can be followed with ``tail -f`` while a run
is in progress. Readers skip malformed lines (a crashed run may leave a
partial last line).
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import threading
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import IO, Any

from agentloop.redaction import looks_like_base64_blob, redact_sensitive_text
from agentloop.schemas import LoopResult, TokenUsage, TraceConfig

logger = logging.getLogger(__name__)

TRACE_ENV = "AGENTLOOP_TRACE"
TRACE_PATH_ENV = "AGENTLOOP_TRACE_PATH"
_DEFAULT_TRACE_DIR = ".traces"
_MAX_STRING = 5_000
_MAX_PREVIEW = 500
_MAX_ITEMS = 80
_MAX_DEPTH = 6


class TraceEventType(str, Enum):
    """Closed vocabulary of trace event ``type`` values."""

    AGENT_START = "agent_start"
    AGENT_CONFIG = "agent_config"
    SYSTEM_PROMPT = "system_prompt"
    ITERATION_START = "iteration_start"
    ITERATION_END = "iteration_end"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    MODEL_RESPONSE = "model_response"
    MESSAGE = "message"
    STUCK_DETECTED = "stuck_detected"
    NUDGE_INJECTED = "nudge_injected"
    CONTEXT_SUMMARIZED = "context_summarized"
    CONTEXT_ANALYSIS = "context_analysis"
    AGENT_COMPLETE = "agent_complete"
    AGENT_ERROR = "agent_error"
    SUMMARY = "summary"


TRACE_EVENT_TYPES = frozenset(t.value for t in TraceEventType)


def _timestamp() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"\n... [truncated, {len(text)} total chars]"


def default_trace_path() -> Path:
    stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return Path(_DEFAULT_TRACE_DIR) / f"trace-{stamp}.ndjson"


def resolve_trace_config(config: TraceConfig | None) -> TraceConfig:
    """Apply ``AGENTLOOP_TRACE`` / ``AGENTLOOP_TRACE_PATH`` when the config leaves tracing off."""
    config = config or TraceConfig()
    if config.enabled:
        return config
    env_enabled = os.getenv(TRACE_ENV, "").strip().lower() in {"1", "true", "yes", "on"}
    env_path = os.getenv(TRACE_PATH_ENV, "").strip()
    if not env_enabled and not env_path:
        return config
    return config.model_copy(
        update={"enabled": True, "output_path": env_path or config.output_path}
    )


def sanitize_for_trace(value: Any, depth: int = 0) -> Any:
    """Make a value JSON-safe and small: drop binary/image payloads, redact secrets."""
    if depth > _MAX_DEPTH:
        return "[truncated-depth]"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return f"[binary data, {len(value)} bytes]"
    if isinstance(value, str):
        if looks_like_base64_blob(value):
            return f"[base64 data, {len(value)} chars]"
        redacted, _ = redact_sensitive_text(value)
        return _truncate(redacted, _MAX_STRING)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        return [sanitize_for_trace(v, depth + 1) for v in items[:_MAX_ITEMS]]
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for i, (key, val) in enumerate(value.items()):
            if i >= _MAX_ITEMS:
                out["__truncated__"] = f"{len(value) - _MAX_ITEMS} more key(s)"
                break
            name = str(key)
            if name in {"screenshot", "image", "images"}:
                out[name] = "[image data omitted]"
            else:
                out[name] = sanitize_for_trace(val, depth + 1)
        return out
    if hasattr(value, "model_dump"):
        return sanitize_for_trace(value.model_dump(mode="json"), depth + 1)
    return _truncate(repr(value), 400)


def summarize_result(result: Any) -> str:
    """One-line description of a tool result for traces without full results."""
    if result is None:
        return "null"
    if isinstance(result, str):
        return f"string ({len(result)} chars, {result.count(chr(10)) + 1} lines)"
    if isinstance(result, (bytes, bytearray)):
        return f"bytes ({len(result)})"
    if isinstance(result, dict):
        if "exit_code" in result or "stdout" in result:
            stdout = str(result.get("stdout") or "")
            return f"bash (exit {result.get('exit_code', 0)}, {len(stdout)} chars)"
        if "screenshot" in result:
            return "content with image"
        keys = list(result)
        more = "..." if len(keys) > 5 else ""
        return f"object {{{', '.join(str(k) for k in keys[:5])}{more}}}"
    if isinstance(result, (list, tuple)):
        return f"list ({len(result)} items)"
    return type(result).__name__


class TraceRecorder:
    """Append-only NDJSON sink for structured execution events.

    A disabled recorder accepts every call and writes nothing, so callers never
    need to branch on whether tracing is on.
    """

    def __init__(
        self,
        output_path: str | Path | None = None,
        *,
        enabled: bool = True,
        include_tool_results: bool = False,
    ) -> None:
        self.enabled = enabled
        self.include_tool_results = include_tool_results
        self.path = Path(output_path) if output_path else default_trace_path()
        self._fh: IO[str] | None = None
        self._closed = False
        self._lock = threading.Lock()
        self.tool_call_counts: dict[str, int] = {}
        self.total_tool_calls = 0
        self.errors_encountered = 0
        self.stuck_count = 0

    @classmethod
    def from_config(cls, config: TraceConfig | None) -> TraceRecorder:
        resolved = resolve_trace_config(config)
        return cls(
            resolved.output_path,
            enabled=resolved.enabled,
            include_tool_results=resolved.include_tool_results,
        )

    @classmethod
    def disabled(cls) -> TraceRecorder:
        return cls(enabled=False)

    # ------------------------------------------------------------------
    # Core writer
    # ------------------------------------------------------------------

    def emit(self, event_type: TraceEventType | str, iteration: int | None = None, **fields: Any) -> None:
        """Append one event and flush it."""
        type_value = TraceEventType(event_type).value
        if not self.enabled:
            return
        event: dict[str, Any] = {"ts": _timestamp(), "type": type_value}
        if iteration is not None:
            event["iter"] = iteration
        for key, value in fields.items():
            event[key] = sanitize_for_trace(value)
        line = json.dumps(event, ensure_ascii=False, default=str)

        try:
            with self._lock:
                if self._closed:
                    logger.debug("Trace closed; dropping %s event", type_value)
                    return
                fh = self._ensure_open()
                fh.write(line + "\n")
                fh.flush()
        except OSError as exc:
            logger.warning("Could not append trace event to %s: %s", self.path, exc)

    def _ensure_open(self) -> IO[str]:
        if self._fh is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("a", encoding="utf-8")
            logger.info("Writing trace to %s", self.path)
        return self._fh

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def record_agent_start(self, run_id: str, task: str, model: str) -> None:
        self.emit(TraceEventType.AGENT_START, runId=run_id, task=task, model=model)

    def record_config(
        self,
        *,
        limits: dict[str, Any],
        completion: list[dict[str, Any]],
        stuck_detection: dict[str, Any],
        rules: list[str],
        tools: list[str],
    ) -> None:
        self.emit(
            TraceEventType.AGENT_CONFIG,
            limits=limits,
            completion=completion,
            stuckDetection=stuck_detection,
            rules=[r[:200] for r in rules],
            tools=tools,
        )

    def record_system_prompt(self, prompt: str) -> None:
        self.emit(
            TraceEventType.SYSTEM_PROMPT,
            prompt=_truncate(prompt, 10_000),
            length=len(prompt),
        )

    def record_iteration_start(self, iteration: int, *, cost: float, tokens: TokenUsage) -> None:
        self.emit(
            TraceEventType.ITERATION_START,
            iteration,
            cost=cost,
            tokens={"input": tokens.input, "output": tokens.output},
        )

    def record_iteration_end(
        self,
        iteration: int,
        *,
        duration_ms: float,
        tokens: TokenUsage,
        cost: float,
        tool_call_count: int,
    ) -> None:
        self.emit(
            TraceEventType.ITERATION_END,
            iteration,
            duration=round(duration_ms, 1),
            tokens={"input": tokens.input, "output": tokens.output},
            cost=cost,
            toolCallCount=tool_call_count,
        )

    def record_tool_call(self, iteration: int, tool: str, args: dict[str, Any]) -> None:
        self.tool_call_counts[tool] = self.tool_call_counts.get(tool, 0) + 1
        self.total_tool_calls += 1
        self.emit(TraceEventType.TOOL_CALL, iteration, tool=tool, args=args)

    def record_tool_result(
        self,
        iteration: int,
        tool: str,
        result: Any,
        *,
        duration_ms: float,
        success: bool = True,
        error: str | None = None,
    ) -> None:
        fields: dict[str, Any] = {
            "tool": tool,
            "durationMs": round(duration_ms, 1),
            "success": success,
        }
        if self.include_tool_results:
            fields["result"] = result
        else:
            fields["resultSummary"] = summarize_result(result)
        if not success:
            self.errors_encountered += 1
            if error:
                fields["error"] = error
        self.emit(TraceEventType.TOOL_RESULT, iteration, **fields)

    def record_tool_error(
        self,
        iteration: int,
        tool: str,
        error: BaseException | str,
        *,
        duration_ms: float,
    ) -> None:
        self.errors_encountered += 1
        message = str(error) if not isinstance(error, BaseException) else f"{error}" or type(error).__name__
        self.emit(
            TraceEventType.TOOL_ERROR,
            iteration,
            tool=tool,
            durationMs=round(duration_ms, 1),
            error=message,
            errorType=type(error).__name__ if isinstance(error, BaseException) else None,
        )

    def record_model_response(
        self,
        iteration: int,
        *,
        text: str,
        tool_names: list[str],
        tokens: TokenUsage,
        cost: float,
    ) -> None:
        self.emit(
            TraceEventType.MODEL_RESPONSE,
            iteration,
            hasText=bool(text),
            textLength=len(text),
            textPreview=text[:_MAX_PREVIEW],
            toolCallCount=len(tool_names),
            toolNames=tool_names,
            tokens={"input": tokens.input, "output": tokens.output},
            cost=cost,
        )

    def record_message(self, iteration: int | None, role: str, content: str) -> None:
        self.emit(
            TraceEventType.MESSAGE,
            iteration,
            role=role,
            contentLength=len(content),
            contentPreview=content[:_MAX_PREVIEW],
        )

    def record_stuck(self, iteration: int, reason: str, details: str) -> None:
        self.stuck_count += 1
        self.emit(TraceEventType.STUCK_DETECTED, iteration, reason=reason, details=details)

    def record_nudge(self, iteration: int, nudge: str, *, source: str) -> None:
        self.emit(
            TraceEventType.NUDGE_INJECTED,
            iteration,
            nudge=nudge[:1_000],
            nudgeLength=len(nudge),
            source=source,
        )

    def record_context_summarized(
        self,
        iteration: int,
        *,
        original_tokens: int,
        new_tokens: int,
        messages_summarized: int,
        strategy: str,
    ) -> None:
        reduction = original_tokens - new_tokens
        percent = round(reduction / original_tokens * 100) if original_tokens else 0
        self.emit(
            TraceEventType.CONTEXT_SUMMARIZED,
            iteration,
            originalTokens=original_tokens,
            newTokens=new_tokens,
            reduction=reduction,
            reductionPercent=percent,
            messagesSummarized=messages_summarized,
            strategy=strategy,
        )

    def record_context_analysis(
        self,
        iteration: int,
        *,
        system_prompt_tokens: int,
        message_count: int,
        total_message_tokens: int,
        largest_messages: list[dict[str, Any]],
    ) -> None:
        self.emit(
            TraceEventType.CONTEXT_ANALYSIS,
            iteration,
            systemPromptTokens=system_prompt_tokens,
            messageCount=message_count,
            totalMessageTokens=total_message_tokens,
            largestMessages=largest_messages,
        )

    def record_agent_complete(self, result: LoopResult, *, files_modified: list[str]) -> None:
        self.emit(
            TraceEventType.AGENT_COMPLETE,
            success=result.success,
            reason=result.reason.value,
            summary=result.summary,
        )
        self.emit(
            TraceEventType.SUMMARY,
            totalIterations=result.iterations,
            totalToolCalls=self.total_tool_calls,
            totalTokens={"input": result.tokens.input, "output": result.tokens.output},
            totalCost=result.cost,
            elapsedMs=round(result.elapsed_ms, 1),
            result=result.reason.value,
            toolCallCounts=dict(self.tool_call_counts),
            filesModified=sorted(files_modified),
            errorsEncountered=self.errors_encountered,
            stuckCount=self.stuck_count,
        )

    def record_agent_error(self, error: BaseException | str, *, code: str | None = None) -> None:
        self.emit(
            TraceEventType.AGENT_ERROR,
            error=str(error),
            errorType=type(error).__name__ if isinstance(error, BaseException) else None,
            code=code,
        )


def read_trace(path: str | Path) -> Iterator[dict[str, Any]]:
    """Yield well-formed events from a trace file, skipping malformed lines."""
    skipped = 0
    with Path(path).open("r", encoding="utf-8", errors="replace") as fh:
        for raw in fh:
            line = raw.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if not isinstance(event, dict) or event.get("type") not in TRACE_EVENT_TYPES:
                skipped += 1
                continue
            yield event
    if skipped:
        logger.debug("Skipped %d malformed trace line(s) in %s", skipped, path)
