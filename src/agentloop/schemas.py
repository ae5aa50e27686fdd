"""Pydantic models for structured data throughout the loop engine."""

from __future__ import annotations

import datetime as dt
import hashlib
import itertools
import json
import re
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_ITERATIONS: int = 50
DEFAULT_MAX_COST: float = 10.0
DEFAULT_TIMEOUT_SECONDS: float = 4 * 60 * 60
"""Wall-clock budget for one run (4h)."""

DEFAULT_CONTEXT_CEILING: int = 80_000
"""Estimated conversation tokens above which the context is compacted."""

DEFAULT_MODEL_SUMMARY_THRESHOLD: int = 120_000
"""Above this size compaction asks the model for a summary instead of a heuristic one."""

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr|d)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "m": 60.0,
    "min": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "d": 86400.0,
}

_MESSAGE_IDS = itertools.count(1)


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def parse_duration(value: Any) -> float:
    """Convert ``90``, ``"90s"``, ``"30m"``, ``"2h"`` or ``"1d"`` to seconds."""
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '30m'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, dt.timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"Unrecognised duration: {value!r}")
        unit = (match.group(2) or "s").lower()
        seconds = float(match.group(1)) * _DURATION_UNITS[unit]
    else:
        raise ValueError(f"Unrecognised duration: {value!r}")
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return seconds


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, Enum):
    """Conversation message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class StuckReason(str, Enum):
    """Why the detector thinks the agent is stuck."""

    NONE = "none"
    REPETITIVE = "repetitive"
    ERROR_LOOP = "error_loop"
    OSCILLATION = "oscillation"
    NO_PROGRESS = "no_progress"


class EndReason(str, Enum):
    """Reason a loop run ended."""

    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    MAX_COST = "max_cost"
    TIMEOUT = "timeout"
    STUCK = "stuck"
    STOPPED = "stopped"
    ERROR = "error"


class LoopPhase(str, Enum):
    """Coarse engine state reported through :class:`LoopStatus`."""

    IDLE = "idle"
    RUNNING = "running"
    STUCK = "stuck"
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class ToolCallRequest(BaseModel):
    """A tool call as requested by the model."""

    id: str = ""
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """One conversation entry. ``id`` is a process-wide monotonic sequence."""

    id: int = Field(default_factory=lambda: next(_MESSAGE_IDS))
    role: Role
    content: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    images: list[str] = Field(default_factory=list)
    is_summary: bool = False


class TokenUsage(BaseModel):
    """Cumulative or per-turn token counts."""

    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


# ---------------------------------------------------------------------------
# Tool invocations and iterations
# ---------------------------------------------------------------------------

def _normalize_arg(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split())
    if isinstance(value, dict):
        return {str(k): _normalize_arg(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_arg(v) for v in value]
    return value


def tool_signature(name: str, args: dict[str, Any] | None) -> str:
    """Return ``name:digest`` for a tool call with whitespace-normalised, key-sorted args."""
    canonical = json.dumps(
        _normalize_arg(args or {}),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:12]
    return f"{name}:{digest}"


class ToolInvocation(BaseModel):
    """A tool call issued by the model, with its comparison signature."""

    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    call_id: str = ""
    signature: str = ""

    @model_validator(mode="after")
    def _fill_signature(self) -> ToolInvocation:
        if not self.signature:
            self.signature = tool_signature(self.name, self.args)
        return self


class ToolResult(BaseModel):
    """Outcome of executing one tool call."""

    name: str
    success: bool = True
    output: Any = None
    error: str | None = None
    duration_ms: float = 0.0


class Iteration(BaseModel):
    """Record of one observe/call/execute cycle."""

    number: int
    started_at: str = Field(default_factory=_utc_now)
    duration_ms: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    invocations: list[ToolInvocation] = Field(default_factory=list)
    results: list[ToolResult] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    response_text: str = ""
    nudge_message: str | None = None

    @property
    def action_signature(self) -> str:
        """Ordered signature of every tool call this turn (empty when none)."""
        return "|".join(inv.signature for inv in self.invocations)


class StuckVerdict(BaseModel):
    """Detector output. ``reason == NONE`` means not stuck."""

    reason: StuckReason = StuckReason.NONE
    details: str = ""
    iteration_range: tuple[int, int] | None = None
    repeated_error: str | None = None

    @property
    def is_stuck(self) -> bool:
        return self.reason != StuckReason.NONE

    @classmethod
    def none(cls) -> StuckVerdict:
        return cls()


# ---------------------------------------------------------------------------
# Model transport payloads
# ---------------------------------------------------------------------------

class ModelUsage(BaseModel):
    """Token usage reported by a model call."""

    input_tokens: int = 0
    output_tokens: int = 0


class ModelRequest(BaseModel):
    """Everything the transport needs for one model call."""

    model: str
    system_prompt: str
    messages: list[Message] = Field(default_factory=list)
    tools: list[dict[str, Any]] = Field(default_factory=list)
    max_output_tokens: int | None = None


class ModelResponse(BaseModel):
    """Normalised model output."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    usage: ModelUsage = Field(default_factory=ModelUsage)
    cost: float | None = None
    model: str | None = None
    stop_reason: str | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ToolDefinition:
    """A tool the model may call.

    ``args_model`` (a pydantic model) both validates arguments and produces the
    JSON schema sent to the model; ``parameters`` is used verbatim when no
    model is given. ``handler`` receives the validated arguments as keyword
    arguments and may be sync or async. ``writes_path_arg`` names the argument
    holding a file path the tool writes, so the engine can track modified files.
    """

    __slots__ = ("name", "description", "handler", "args_model", "parameters", "writes_path_arg")

    def __init__(
        self,
        name: str,
        description: str,
        handler: Callable[..., Any],
        *,
        args_model: type[BaseModel] | None = None,
        parameters: dict[str, Any] | None = None,
        writes_path_arg: str | None = None,
    ) -> None:
        normalized = (name or "").strip()
        if not normalized:
            raise ValueError("Tool name must be a non-empty string")
        self.name = normalized
        self.description = description
        self.handler = handler
        self.args_model = args_model
        self.parameters = parameters
        self.writes_path_arg = writes_path_arg

    def json_schema(self) -> dict[str, Any]:
        if self.args_model is not None:
            return self.args_model.model_json_schema()
        return self.parameters or {"type": "object", "properties": {}}

    def __repr__(self) -> str:
        return f"ToolDefinition(name={self.name!r})"


class ContextFile(BaseModel):
    """Static file content merged into the system prompt."""

    path: str
    content: str


class LimitsConfig(BaseModel):
    """Execution limits."""

    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    max_cost: float = Field(default=DEFAULT_MAX_COST, gt=0)
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    """Seconds. Accepts duration strings such as ``"30m"``."""

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float:
        return parse_duration(value)


class CompletionResult(BaseModel):
    """Outcome of a completion check."""

    complete: bool = False
    summary: str | None = None
    source: str | None = None


class ToolCallCompletion(BaseModel):
    """Complete once a specific tool (``done`` by default) has been invoked successfully."""

    type: Literal["tool"] = "tool"
    tool: str = "done"


class FileCompletion(BaseModel):
    """Complete once a path exists and, optionally, its content matches."""

    type: Literal["file"] = "file"
    path: str
    contains: str | None = None
    pattern: str | None = None

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid pattern {value!r}: {exc}") from exc
        return value


class CommandCompletion(BaseModel):
    """Complete once a shell command exits zero."""

    type: Literal["command"] = "command"
    command: str
    cwd: str | None = None
    timeout: float = Field(default=60.0, gt=0)


class CustomCompletion(BaseModel):
    """Complete when an injected predicate over the loop state says so."""

    type: Literal["custom"] = "custom"
    check: Callable[..., Any]
    name: str = "custom"


CompletionSpec = Annotated[
    Union[ToolCallCompletion, FileCompletion, CommandCompletion, CustomCompletion],
    Field(discriminator="type"),
]


class StuckDetectionConfig(BaseModel):
    """Thresholds for stuck-pattern detection.

    Every per-pattern window falls back to ``window_size`` when unset, and is
    widened to the number of iterations its threshold needs, so raising a
    threshold alone never makes a pattern undetectable.
    """

    enabled: bool = True
    window_size: int = Field(default=8, ge=2)
    repetitive_threshold: int = Field(default=3, ge=2)
    error_loop_threshold: int = Field(default=3, ge=2)
    oscillation_threshold: int = Field(default=2, ge=2)
    oscillation_max_period: int = Field(default=3, ge=2)
    no_progress_token_threshold: int = Field(default=150_000, ge=1)
    no_progress_min_iterations: int = Field(default=5, ge=1)
    repetitive_window: int | None = Field(default=None, ge=2)
    error_loop_window: int | None = Field(default=None, ge=2)
    oscillation_window: int | None = Field(default=None, ge=2)
    no_progress_window: int | None = Field(default=None, ge=1)

    def required_window(self, reason: StuckReason) -> int:
        """Fewest iterations that can show ``reason`` under the current thresholds."""
        return {
            StuckReason.REPETITIVE: self.repetitive_threshold,
            StuckReason.ERROR_LOOP: self.error_loop_threshold,
            StuckReason.OSCILLATION: self.oscillation_max_period * self.oscillation_threshold,
            StuckReason.NO_PROGRESS: self.no_progress_min_iterations,
        }.get(reason, 0)

    def window_for(self, reason: StuckReason) -> int:
        override = {
            StuckReason.REPETITIVE: self.repetitive_window,
            StuckReason.ERROR_LOOP: self.error_loop_window,
            StuckReason.OSCILLATION: self.oscillation_window,
            StuckReason.NO_PROGRESS: self.no_progress_window,
        }.get(reason)
        window = override if override is not None else self.window_size
        return max(window, self.required_window(reason))

    @property
    def history_size(self) -> int:
        """How many iterations the engine must retain for detection."""
        windows = [self.window_for(r) for r in StuckReason if r != StuckReason.NONE]
        return max([*windows, self.no_progress_min_iterations, 2])


class TraceConfig(BaseModel):
    """NDJSON trace output options."""

    enabled: bool = False
    output_path: str | None = None
    include_tool_results: bool = False


class CompactionConfig(BaseModel):
    """Conversation compaction thresholds (estimated tokens)."""

    max_context_tokens: int = Field(default=DEFAULT_CONTEXT_CEILING, ge=1)
    model_summary_threshold: int = Field(default=DEFAULT_MODEL_SUMMARY_THRESHOLD, ge=1)
    keep_recent: int = Field(default=8, ge=1)
    chars_per_token: float = Field(default=4.0, gt=0)


class LoopHooks(BaseModel):
    """Callbacks invoked synchronously from the loop (async callables are awaited)."""

    model_config = ConfigDict(frozen=True)

    on_update: Callable[..., Any] | None = None
    on_stuck: Callable[..., Any] | None = None
    on_complete: Callable[..., Any] | None = None
    on_error: Callable[..., Any] | None = None


class LoopConfig(BaseModel):
    """Run configuration. Immutable once constructed."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    model: str
    task: str
    rules: list[str] = Field(default_factory=list)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    completion: list[CompletionSpec] = Field(default_factory=lambda: [ToolCallCompletion()])
    stuck_detection: StuckDetectionConfig = Field(default_factory=StuckDetectionConfig)
    trace: TraceConfig = Field(default_factory=TraceConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    tools: list[ToolDefinition] = Field(default_factory=list)
    default_tools: bool = True
    context_files: list[ContextFile] = Field(default_factory=list)
    context_text: str | None = None
    system_prompt: str | None = None
    hooks: LoopHooks = Field(default_factory=LoopHooks)
    workdir: str = Field(default_factory=lambda: str(Path.cwd()))
    headless_browser: bool = True
    max_output_tokens: int | None = None

    @field_validator("task")
    @classmethod
    def _require_task(cls, value: str) -> str:
        if not (value or "").strip():
            raise ValueError("task must be a non-empty string")
        return value

    @field_validator("completion", mode="before")
    @classmethod
    def _wrap_single_completion(cls, value: Any) -> Any:
        if value is None:
            return [ToolCallCompletion()]
        if isinstance(value, (BaseModel, dict)):
            return [value]
        return value

    @field_validator("completion")
    @classmethod
    def _require_completion(cls, value: list[Any]) -> list[Any]:
        if not value:
            raise ValueError("at least one completion spec is required")
        return value

    @field_validator("trace", mode="before")
    @classmethod
    def _coerce_trace(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return TraceConfig(enabled=value)
        if isinstance(value, str):
            return TraceConfig(enabled=True, output_path=value)
        return value


# ---------------------------------------------------------------------------
# Status / results
# ---------------------------------------------------------------------------

class CompletionContext(BaseModel):
    """Read-only snapshot handed to completion checks."""

    iteration: int
    cost: float
    tokens: TokenUsage
    files_modified: list[str] = Field(default_factory=list)
    tools_invoked: list[str] = Field(default_factory=list)
    recent_iterations: list[Iteration] = Field(default_factory=list)
    summary: str = ""
    workdir: str = ""


class StuckContext(BaseModel):
    """Passed to the ``on_stuck`` hook."""

    verdict: StuckVerdict
    iteration: int
    recent_iterations: list[Iteration] = Field(default_factory=list)

    @property
    def reason(self) -> StuckReason:
        return self.verdict.reason

    @property
    def details(self) -> str:
        return self.verdict.details


class LoopStatus(BaseModel):
    """Point-in-time view of a run."""

    id: str = ""
    phase: LoopPhase = LoopPhase.IDLE
    iteration: int = 0
    cost: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    elapsed_ms: float = 0.0
    last_actions: list[str] = Field(default_factory=list)


class LoopError(BaseModel):
    """Fatal error attached to a result."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    code: str
    message: str
    cause: BaseException | None = Field(default=None, exclude=True)


class LoopResult(BaseModel):
    """Final outcome of a run."""

    success: bool
    reason: EndReason
    iterations: int = 0
    cost: float = 0.0
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    elapsed_ms: float = 0.0
    summary: str = ""
    error: LoopError | None = None
    trace_path: str | None = None


class ProcessInfo(BaseModel):
    """Public view of a managed background process."""

    name: str
    command: str
    pid: int
    pgid: int
    cwd: str | None = None
    started_at: str = Field(default_factory=_utc_now)
    running: bool = True
    ready_pattern: str | None = None
