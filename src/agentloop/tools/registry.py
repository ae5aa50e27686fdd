"""Tool registry and execution.

Tools are :class:`~agentloop.schemas.ToolDefinition` objects. Execution
validates arguments against the tool's pydantic model, runs the handler
(sync or async), times it and classifies the outcome:

* the handler raised (or the tool/arguments were invalid) -> an exception
  outcome, traced as ``tool_error``;
* the handler returned a dict with an ``error`` key or a non-zero
  ``exit_code`` -> an unsuccessful result, traced as ``tool_result``;
* anything else -> success.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from agentloop.errors import ToolExecutionError
from agentloop.model import maybe_await
from agentloop.schemas import ToolDefinition, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

MAX_TOOL_OUTPUT_CHARS = 30_000
_IMAGE_KEYS = ("screenshot",)


@dataclass
class ToolOutcome:
    """A tool result plus the exception that produced it, if any."""

    result: ToolResult
    exception: BaseException | None = None

    @property
    def raised(self) -> bool:
        return self.exception is not None


def failure_message(output: Any) -> str | None:
    """Return an error description when a handler's return value signals failure."""
    if not isinstance(output, dict):
        return None
    error = output.get("error")
    if error:
        return str(error)
    exit_code = output.get("exit_code")
    if isinstance(exit_code, int) and not isinstance(exit_code, bool) and exit_code != 0:
        stderr = str(output.get("stderr") or output.get("stdout") or "").strip()
        tail = stderr[-500:] if stderr else ""
        return f"exit code {exit_code}: {tail}" if tail else f"exit code {exit_code}"
    return None


def split_images(output: Any) -> tuple[Any, list[str]]:
    """Pull base64 screenshots out of a tool result so they can travel as message images."""
    if not isinstance(output, dict):
        return output, []
    images = [output[k] for k in _IMAGE_KEYS if isinstance(output.get(k), str) and output.get(k)]
    if not images:
        return output, []
    rest = {k: v for k, v in output.items() if k not in _IMAGE_KEYS}
    rest["screenshot_attached"] = True
    return rest, images


def format_tool_output(output: Any, *, max_chars: int = MAX_TOOL_OUTPUT_CHARS) -> str:
    """Render a tool result as message text."""
    if output is None:
        text = "null"
    elif isinstance(output, str):
        text = output
    else:
        text = json.dumps(output, ensure_ascii=False, default=str, indent=2)
    if len(text) > max_chars:
        text = text[:max_chars] + f"\n... [truncated, {len(text)} total chars]"
    return text


class ToolRegistry:
    """Name -> tool mapping with validation and execution.

    Usage::

        registry = ToolRegistry(create_builtin_tools(...))
        registry.register(my_tool)           # later registrations win
        outcome = await registry.execute(invocation)
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if not isinstance(tool, ToolDefinition):
            raise TypeError("Registered tool must be a ToolDefinition")
        if tool.name in self._tools:
            logger.debug("Tool '%s' overridden", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        """Provider-neutral tool schemas: ``name``, ``description``, ``parameters``."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.json_schema(),
            }
            for tool in self._tools.values()
        ]

    async def execute(self, invocation: ToolInvocation) -> ToolOutcome:
        """Run one tool call. Never raises for handler failures."""
        started = time.perf_counter()

        def _elapsed() -> float:
            return (time.perf_counter() - started) * 1000.0

        tool = self._tools.get(invocation.name)
        if tool is None:
            exc = ToolExecutionError(f"Unknown tool: {invocation.name}")
            return self._failed(invocation.name, exc, _elapsed())

        try:
            kwargs = self._validate(tool, invocation.args)
        except ValidationError as exc:
            error = ToolExecutionError(f"Invalid arguments for {tool.name}: {_validation_summary(exc)}")
            return self._failed(tool.name, error, _elapsed(), cause=exc)

        try:
            output = await maybe_await(tool.handler(**kwargs))
        except Exception as exc:
            logger.error("Tool %s failed: %s", tool.name, exc)
            return self._failed(tool.name, exc, _elapsed())

        duration = _elapsed()
        error = failure_message(output)
        if error:
            logger.warning("Tool %s reported failure: %s", tool.name, error[:200])
        else:
            logger.debug("Tool %s succeeded in %.0fms", tool.name, duration)
        return ToolOutcome(
            result=ToolResult(
                name=tool.name,
                success=error is None,
                output=output,
                error=error,
                duration_ms=duration,
            )
        )

    @staticmethod
    def _validate(tool: ToolDefinition, args: dict[str, Any]) -> dict[str, Any]:
        if tool.args_model is None:
            return dict(args or {})
        validated = tool.args_model.model_validate(args or {})
        return {name: getattr(validated, name) for name in type(validated).model_fields}

    @staticmethod
    def _failed(
        name: str,
        exc: BaseException,
        duration_ms: float,
        *,
        cause: BaseException | None = None,
    ) -> ToolOutcome:
        message = str(exc) or type(exc).__name__
        return ToolOutcome(
            result=ToolResult(name=name, success=False, error=message, duration_ms=duration_ms),
            exception=cause or exc,
        )


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "(root)"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)
