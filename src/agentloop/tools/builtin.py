"""Default shell, file, process and utility tools."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import time
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agentloop.managers.process import DEFAULT_READY_TIMEOUT, ProcessManager
from agentloop.schemas import ToolDefinition

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

DEFAULT_BASH_TIMEOUT = 120.0
_POLL_INTERVAL = 0.25
_MAX_STREAM_CHARS = 30_000
_MAX_READ_CHARS = 100_000


class ToolArgs(BaseModel):
    """Base for tool argument models; accepts camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BashArgs(ToolArgs):
    command: str = Field(description="Shell command to run")
    timeout: float = Field(default=DEFAULT_BASH_TIMEOUT, gt=0, description="Seconds before the command is killed")
    cwd: str | None = Field(default=None, description="Working directory (defaults to the project root)")


class ReadFileArgs(ToolArgs):
    path: str = Field(description="File path, relative to the project root")


class WriteFileArgs(ToolArgs):
    path: str = Field(description="File path, relative to the project root")
    content: str = Field(description="Full new file content")


class StartProcessArgs(ToolArgs):
    name: str = Field(description="Name used to refer to the process later")
    command: str = Field(description="Shell command, e.g. 'npm run dev'")
    ready_pattern: str | None = Field(
        default=None, description="Regex (or substring) in the output that means the process is ready"
    )
    ready_timeout: float = Field(default=DEFAULT_READY_TIMEOUT, gt=0)
    cwd: str | None = None


class ProcessNameArgs(ToolArgs):
    name: str = Field(description="Process name given to startProcess")


class GetProcessOutputArgs(ProcessNameArgs):
    lines: int = Field(default=100, ge=1, le=1000, description="How many trailing lines to return")


class NoArgs(ToolArgs):
    pass


class DoneArgs(ToolArgs):
    summary: str = Field(description="What was accomplished and how it was verified")


class ThinkArgs(ToolArgs):
    thought: str = Field(description="Your reasoning, plan, or analysis")


def _tail(text: str, limit: int = _MAX_STREAM_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"... [{len(text) - limit} chars omitted]\n" + text[-limit:]


def _kill_group(proc: subprocess.Popen[str]) -> None:
    if os.name != "nt":
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
    with suppress(Exception):
        proc.kill()


def run_bash(
    command: str,
    *,
    cwd: str | Path | None = None,
    timeout: float = DEFAULT_BASH_TIMEOUT,
    should_stop: Callable[[], bool] | None = None,
) -> dict[str, Any]:
    """Run ``command`` through the shell, polling for timeout and the loop's stop flag."""
    kwargs: dict[str, Any] = {"start_new_session": True} if os.name != "nt" else {}
    proc = subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd) if cwd else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        **kwargs,
    )
    deadline = time.monotonic() + timeout
    interrupted: str | None = None
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if should_stop is not None and should_stop():
                interrupted = "Interrupted: the loop is stopping"
            elif time.monotonic() >= deadline:
                interrupted = f"Command timed out after {timeout:g}s"
            if interrupted:
                _kill_group(proc)
                stdout, stderr = proc.communicate()
                break

    result: dict[str, Any] = {
        "stdout": _tail(stdout or ""),
        "stderr": _tail(stderr or ""),
        "exit_code": proc.returncode if interrupted is None else (proc.returncode or -1),
    }
    if interrupted:
        result["error"] = interrupted
    return result


def create_builtin_tools(
    *,
    workdir: str | Path,
    process_manager: ProcessManager,
    should_stop: Callable[[], bool] | None = None,
) -> list[ToolDefinition]:
    """Shell, file and background-process tools bound to one run's resources."""
    root = Path(workdir)

    def _resolve(path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else root / candidate

    async def bash(command: str, timeout: float, cwd: str | None) -> dict[str, Any]:
        return await asyncio.to_thread(
            run_bash,
            command,
            cwd=_resolve(cwd) if cwd else root,
            timeout=timeout,
            should_stop=should_stop,
        )

    def read_file(path: str) -> dict[str, Any]:
        target = _resolve(path)
        content = target.read_text(encoding="utf-8", errors="replace")
        truncated = len(content) > _MAX_READ_CHARS
        return {
            "path": path,
            "content": content[:_MAX_READ_CHARS],
            "truncated": truncated,
            "size": len(content),
        }

    def write_file(path: str, content: str) -> dict[str, Any]:
        target = _resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info("Wrote %s (%d chars)", target, len(content))
        return {"path": path, "bytes_written": len(content.encode("utf-8"))}

    async def start_process(
        name: str,
        command: str,
        ready_pattern: str | None,
        ready_timeout: float,
        cwd: str | None,
    ) -> dict[str, Any]:
        started = await asyncio.to_thread(
            process_manager.start,
            name,
            command,
            cwd=str(_resolve(cwd)) if cwd else str(root),
            ready_pattern=ready_pattern,
            ready_timeout=ready_timeout,
        )
        result: dict[str, Any] = {
            "name": name,
            "pid": started.info.pid,
            "ready": started.ready,
            "timed_out": started.timed_out,
            "running": not started.exited,
            "output": "\n".join(started.output_tail),
        }
        if started.exited and started.exit_code not in (0, None):
            result["error"] = f"Process '{name}' exited with code {started.exit_code} before becoming ready"
        return result

    async def stop_process(name: str) -> dict[str, Any]:
        stopped = await asyncio.to_thread(process_manager.stop, name)
        if not stopped:
            return {"name": name, "stopped": False, "error": f"No process named '{name}'"}
        return {"name": name, "stopped": True}

    def get_process_output(name: str, lines: int) -> dict[str, Any]:
        output = process_manager.get_output(name, lines)
        return {
            "name": name,
            "running": process_manager.is_running(name),
            "output": "\n".join(output),
        }

    def list_processes() -> dict[str, Any]:
        return {"processes": [p.model_dump(include={"name", "command", "pid", "running"}) for p in process_manager.list()]}

    return [
        ToolDefinition(
            "bash",
            "Run a shell command in the project directory. Returns stdout, stderr and exit_code. "
            "Use startProcess for servers and other long-running commands.",
            bash,
            args_model=BashArgs,
        ),
        ToolDefinition("readFile", "Read a text file.", read_file, args_model=ReadFileArgs),
        ToolDefinition(
            "writeFile",
            "Create or overwrite a file with the given content. Parent directories are created.",
            write_file,
            args_model=WriteFileArgs,
            writes_path_arg="path",
        ),
        ToolDefinition(
            "startProcess",
            "Start a named background process (dev server, watcher). Waits until the ready "
            "pattern appears, the process exits, or the ready timeout passes. Restarts the "
            "process if the name is already in use.",
            start_process,
            args_model=StartProcessArgs,
        ),
        ToolDefinition(
            "stopProcess",
            "Stop a named background process and everything it spawned.",
            stop_process,
            args_model=ProcessNameArgs,
        ),
        ToolDefinition(
            "getProcessOutput",
            "Return the most recent output lines of a background process.",
            get_process_output,
            args_model=GetProcessOutputArgs,
        ),
        ToolDefinition(
            "listProcesses",
            "List background processes started in this run.",
            list_processes,
            args_model=NoArgs,
        ),
    ]


def create_utility_tools() -> list[ToolDefinition]:
    """``done`` and ``think``."""

    def done(summary: str) -> dict[str, Any]:
        return {"done": True, "summary": summary}

    def think(thought: str) -> dict[str, Any]:
        logger.debug("think: %s", thought[:200])
        return {"acknowledged": True}

    return [
        ToolDefinition(
            "done",
            "Signal that the task is complete. Only call this after verifying the result.",
            done,
            args_model=DoneArgs,
        ),
        ToolDefinition(
            "think",
            "Think through a problem step by step before acting. Has no side effects.",
            think,
            args_model=ThinkArgs,
        ),
    ]
