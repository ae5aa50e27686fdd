"""Completion checks evaluated after every iteration."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from agentloop.model import maybe_await
from agentloop.schemas import (
    CommandCompletion,
    CompletionContext,
    CompletionResult,
    CustomCompletion,
    FileCompletion,
    ToolCallCompletion,
)
from agentloop.tools.builtin import run_bash

logger = logging.getLogger(__name__)

_FILE_SUMMARY_CHARS = 500


class CompletionEvaluator:
    """Evaluates completion specs in order; the first satisfied spec wins.

    Checks only read state (files, command exit codes, the context snapshot);
    applying the returned summary is left to the caller.
    """

    def __init__(self, specs: Sequence[Any], *, workdir: str | Path | None = None) -> None:
        self.specs = list(specs)
        self.workdir = Path(workdir) if workdir else Path.cwd()

    @property
    def watched_tools(self) -> set[str]:
        """Tool names whose invocation can complete the run."""
        return {s.tool for s in self.specs if isinstance(s, ToolCallCompletion)}

    async def evaluate(self, context: CompletionContext) -> CompletionResult:
        for spec in self.specs:
            result = await self._check(spec, context)
            if result.complete:
                logger.info("Completion satisfied by %s", result.source)
                return result
        return CompletionResult(complete=False)

    async def _check(self, spec: Any, context: CompletionContext) -> CompletionResult:
        if isinstance(spec, ToolCallCompletion):
            return self._check_tool(spec, context)
        if isinstance(spec, FileCompletion):
            return self._check_file(spec)
        if isinstance(spec, CommandCompletion):
            return await self._check_command(spec)
        if isinstance(spec, CustomCompletion):
            return await self._check_custom(spec, context)
        raise TypeError(f"Unsupported completion spec: {type(spec).__name__}")

    # ------------------------------------------------------------------

    @staticmethod
    def _check_tool(spec: ToolCallCompletion, context: CompletionContext) -> CompletionResult:
        if spec.tool not in context.tools_invoked:
            return CompletionResult(complete=False)
        return CompletionResult(
            complete=True,
            summary=context.summary or None,
            source=f"tool:{spec.tool}",
        )

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.workdir / candidate

    def _check_file(self, spec: FileCompletion) -> CompletionResult:
        target = self._resolve(spec.path)
        if not target.is_file():
            return CompletionResult(complete=False)
        if spec.contains is None and spec.pattern is None:
            content = _read_text(target)
            return CompletionResult(
                complete=True,
                summary=content[:_FILE_SUMMARY_CHARS] if content else f"File {spec.path} exists",
                source=f"file:{spec.path}",
            )

        content = _read_text(target)
        if spec.contains is not None and spec.contains not in content:
            return CompletionResult(complete=False)
        if spec.pattern is not None and not re.search(spec.pattern, content):
            return CompletionResult(complete=False)
        return CompletionResult(
            complete=True,
            summary=content[:_FILE_SUMMARY_CHARS],
            source=f"file:{spec.path}",
        )

    async def _check_command(self, spec: CommandCompletion) -> CompletionResult:
        cwd = self._resolve(spec.cwd) if spec.cwd else self.workdir
        try:
            outcome = await asyncio.to_thread(run_bash, spec.command, cwd=cwd, timeout=spec.timeout)
        except OSError as exc:
            logger.warning("Completion command could not run (%s): %s", exc, spec.command)
            return CompletionResult(complete=False)

        if outcome.get("error"):
            logger.warning("Completion command failed (%s): %s", outcome["error"], spec.command)
            return CompletionResult(complete=False)
        if outcome["exit_code"] != 0:
            logger.debug("Completion command exited %s: %s", outcome["exit_code"], spec.command)
            return CompletionResult(complete=False)
        return CompletionResult(
            complete=True,
            summary=f'Command "{spec.command}" succeeded',
            source=f"command:{spec.command}",
        )

    @staticmethod
    async def _check_custom(spec: CustomCompletion, context: CompletionContext) -> CompletionResult:
        try:
            outcome = await maybe_await(spec.check(context))
        except Exception as exc:
            logger.warning("Custom completion check '%s' raised: %s", spec.name, exc)
            return CompletionResult(complete=False)

        if isinstance(outcome, CompletionResult):
            if outcome.complete and not outcome.source:
                return outcome.model_copy(update={"source": f"custom:{spec.name}"})
            return outcome
        if isinstance(outcome, dict):
            return CompletionResult(
                complete=bool(outcome.get("complete")),
                summary=outcome.get("summary"),
                source=f"custom:{spec.name}",
            )
        return CompletionResult(complete=bool(outcome), source=f"custom:{spec.name}")


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return ""
