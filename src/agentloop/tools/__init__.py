"""Tools the agent can call, and the registry that executes them."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

from agentloop.managers.browser import BrowserManager
from agentloop.managers.process import ProcessManager
from agentloop.schemas import ToolDefinition
from agentloop.tools.browser import create_browser_tools
from agentloop.tools.builtin import create_builtin_tools, create_utility_tools, run_bash
from agentloop.tools.registry import (
    ToolOutcome,
    ToolRegistry,
    failure_message,
    format_tool_output,
    split_images,
)

__all__ = [
    "ToolOutcome",
    "ToolRegistry",
    "build_registry",
    "create_browser_tools",
    "create_builtin_tools",
    "create_utility_tools",
    "failure_message",
    "format_tool_output",
    "run_bash",
    "split_images",
]


def build_registry(
    *,
    workdir: str | Path,
    process_manager: ProcessManager,
    browser_manager: BrowserManager,
    custom_tools: Iterable[ToolDefinition] = (),
    default_tools: bool = True,
    should_stop: Callable[[], bool] | None = None,
) -> ToolRegistry:
    """Default tools (when enabled) overlaid with custom tools; custom tools win on name clashes."""
    registry = ToolRegistry()
    if default_tools:
        for tool in (
            *create_builtin_tools(
                workdir=workdir,
                process_manager=process_manager,
                should_stop=should_stop,
            ),
            *create_browser_tools(browser_manager),
            *create_utility_tools(),
        ):
            registry.register(tool)
    for tool in custom_tools:
        registry.register(tool)
    return registry
