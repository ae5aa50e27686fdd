"""Tests for the loop engine, driven by a scripted model client."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from agentloop.engine import LoopEngine
from agentloop.errors import RunAlreadyStartedError
from agentloop.managers.process import ProcessManager
from agentloop.prompts import PromptCatalog
from agentloop.schemas import (
    EndReason,
    LoopConfig,
    LoopError,
    LoopPhase,
    ModelRequest,
    ModelResponse,
    ModelUsage,
    Role,
    StuckContext,
    StuckReason,
    ToolCallRequest,
    ToolDefinition,
)
from agentloop.tracer import TraceRecorder


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


def _call(name: str, /, **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(name=name, arguments=arguments)


def _reply(*calls: ToolCallRequest, text: str = "", cost: float = 0.01, tokens: int = 100) -> ModelResponse:
    return ModelResponse(
        text=text,
        tool_calls=list(calls),
        usage=ModelUsage(input_tokens=tokens, output_tokens=tokens // 10),
        cost=cost,
    )


class _ScriptedModel:
    """Returns queued responses in order, then plain text replies."""

    def __init__(self, *responses: ModelResponse | Exception) -> None:
        self._responses = list(responses)
        self.requests: list[ModelRequest] = []

    def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if not self._responses:
            return _reply(text="Still working.")
        nxt = self._responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


class _AsyncScriptedModel(_ScriptedModel):
    async def complete(self, request: ModelRequest) -> ModelResponse:  # type: ignore[override]
        await asyncio.sleep(0)
        return super().complete(request)


class _CountingProcessManager:
    def __init__(self) -> None:
        self.stop_all_calls = 0

    def stop_all(self) -> None:
        self.stop_all_calls += 1


class _CountingBrowserManager:
    def __init__(self) -> None:
        self.dispose_calls = 0

    async def dispose(self) -> None:
        self.dispose_calls += 1


def _fake_bash() -> ToolDefinition:
    def bash(command: str) -> dict[str, Any]:
        return {"stdout": "a.txt\nb.txt\n", "stderr": "", "exit_code": 0}

    return ToolDefinition(
        "bash",
        "Run a shell command.",
        bash,
        parameters={"type": "object", "properties": {"command": {"type": "string"}}},
    )


def _engine(tmp_path: Path, model: Any, **config: Any) -> LoopEngine:
    config.setdefault("model", "claude-sonnet-4")
    config.setdefault("task", "Make the tests pass")
    config.setdefault("workdir", str(tmp_path))
    return LoopEngine(
        LoopConfig(**config),
        model,
        tracer=TraceRecorder(tmp_path / "trace.ndjson"),
        catalog=PromptCatalog(user_overrides=False),
    )


def _events(tmp_path: Path) -> list[dict[str, Any]]:
    path = tmp_path / "trace.ndjson"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _types(events: list[dict[str, Any]], kind: str) -> list[dict[str, Any]]:
    return [e for e in events if e["type"] == kind]


def test_max_iterations_runs_exactly_that_many_iterations(tmp_path: Path) -> None:
    engine = _engine(tmp_path, _ScriptedModel(), limits={"max_iterations": 3})
    result = engine.run_sync()

    assert result.success is False
    assert result.reason == EndReason.MAX_ITERATIONS
    assert result.iterations == 3
    assert result.cost == pytest.approx(0.03)
    assert result.tokens.input == 300
    events = _events(tmp_path)
    assert [e["iter"] for e in _types(events, "iteration_end")] == [1, 2, 3]
    assert events[0]["type"] == "agent_start"
    assert events[-1]["type"] == "summary"
    assert events[-1]["result"] == "max_iterations"
    assert engine.get_status().phase == LoopPhase.FAILED


def test_done_tool_completes_run_with_its_summary(tmp_path: Path) -> None:
    model = _ScriptedModel(
        _reply(_call("writeFile", path="app.py", content="print('hi')\n")),
        _reply(_call("done", summary="Wrote app.py and verified it runs")),
    )
    engine = _engine(tmp_path, model)
    result = engine.run_sync()

    assert result.success is True
    assert result.reason == EndReason.COMPLETED
    assert result.iterations == 2
    assert result.summary == "Wrote app.py and verified it runs"
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "print('hi')\n"
    assert engine.get_status().phase == LoopPhase.DONE

    summary = _events(tmp_path)[-1]
    assert summary["filesModified"] == ["app.py"]
    assert summary["toolCallCounts"] == {"writeFile": 1, "done": 1}
    assert engine.get_history()[0].files_modified == ["app.py"]


def test_done_without_tool_completion_does_not_end_run(tmp_path: Path) -> None:
    model =_ScriptedModel(_reply(_call("done", summary="finished")))
    engine = _engine(
        tmp_path,
        model,
        completion={"type": "file", "path": "never.txt"},
        limits={"max_iterations": 2},
    )
    assert engine.run_sync().reason == EndReason.MAX_ITERATIONS


def test_tool_results_are_fed_back_to_the_model(tmp_path: Path) -> None:
    model = _ScriptedModel(_reply(_call("bash", command="ls")))
    engine = _engine(
        tmp_path, model, tools=[_fake_bash()], default_tools=False, limits={"max_iterations": 2}
    )
    engine.run_sync()

    second_request = model.requests[1]
    roles = [m.role for m in second_request.messages]
    assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.USER]
    assistant, tool_message = second_request.messages[1], second_request.messages[2]
    assert assistant.tool_calls[0].id == "call_1_0"
    assert tool_message.tool_call_id == "call_1_0"
    assert "a.txt" in tool_message.content
    assert second_request.messages[0].content.startswith("[Iteration 1/2, Cost: $0.00/$10.00]")
    assert [t["name"] for t in second_request.tools] == ["bash"]
    assert second_request.system_prompt.count("Make the tests pass") == 1


def test_repetitive_action_triggers_default_nudge(tmp_path: Path) -> None:
    model = _ScriptedModel(*[_reply(_call("bash", command="ls")) for _ in range(3)])
    engine = _engine(
        tmp_path, model, tools=[_fake_bash()], default_tools=False, limits={"max_iterations": 4}
    )
    result = engine.run_sync()

    assert result.reason == EndReason.MAX_ITERATIONS
    events = _events(tmp_path)
    stuck = _types(events, "stuck_detected")
    nudges = _types(events, "nudge_injected")
    assert [(e["iter"], e["reason"]) for e in stuck] == [(3, "repetitive")]
    assert [(e["iter"], e["source"]) for e in nudges] == [(3, "default")]

    # The nudge is in the conversation exactly once, ahead of iteration 4.
    final_request = model.requests[3]
    system_messages = [m for m in final_request.messages if m.role == Role.SYSTEM]
    assert len(system_messages) == 1
    assert system_messages[0].content.startswith("[System Nudge]: ")
    history = engine.get_history()
    assert history[3].nudge_message is not None
    assert events[-1]["stuckCount"] == 1


def test_limit_reached_on_stuck_iteration_ends_without_stuck_event(tmp_path: Path) -> None:
    model = _ScriptedModel(*[_reply(_call("bash", command="ls")) for _ in range(3)])
    engine = _engine(
        tmp_path, model, tools=[_fake_bash()], default_tools=False, limits={"max_iterations": 3}
    )
    result = engine.run_sync()

    assert result.reason == EndReason.MAX_ITERATIONS
    events = _events(tmp_path)
    assert _types(events, "stuck_detected") == []
    assert _types(events, "nudge_injected") == []


def test_on_stuck_hook_supplies_the_nudge(tmp_path: Path) -> None:
    seen: list[StuckContext] = []

    def on_stuck(ctx: StuckContext) -> str:
        seen.append(ctx)
        return "Use the think tool and try readFile instead."

    model = _ScriptedModel(*[_reply(_call("bash", command="ls")) for _ in range(3)])
    engine = _engine(
        tmp_path,
        model,
        tools=[_fake_bash()],
        default_tools=False,
        limits={"max_iterations": 4},
        hooks={"on_stuck": on_stuck},
    )
    engine.run_sync()

    assert len(seen) == 1
    assert seen[0].reason == StuckReason.REPETITIVE
    assert seen[0].iteration == 3
    nudge = _types(_events(tmp_path), "nudge_injected")[0]
    assert nudge["source"] == "hook"
    assert nudge["nudge"] == "Use the think tool and try readFile instead."


def test_empty_hook_nudge_ends_run_as_stuck(tmp_path: Path) -> None:
    model = _ScriptedModel(*[_reply(_call("bash", command="ls")) for _ in range(5)])
    engine = _engine(
        tmp_path,
        model,
        tools=[_fake_bash()],
        default_tools=False,
        hooks={"on_stuck": lambda ctx: ""},
    )
    result = engine.run_sync()

    assert result.success is False
    assert result.reason == EndReason.STUCK
    assert result.iterations == 3
    assert "repeated" in result.summary


def test_repeated_tool_errors_are_detected_as_error_loop(tmp_path: Path) -> None:
    def flaky(path: str) -> dict[str, Any]:
        raise FileNotFoundError(f"No such file: {path}")

    tool = ToolDefinition("open", "Open a file.", flaky)
    model = _ScriptedModel(*[_reply(_call("open", path=f"f{i}.txt")) for i in range(3)])
    engine = _engine(
        tmp_path, model, tools=[tool], default_tools=False, hooks={"on_stuck": lambda ctx: None}
    )
    result = engine.run_sync()

    assert result.reason == EndReason.STUCK
    events = _events(tmp_path)
    assert len(_types(events, "tool_error")) == 3
    assert _types(events, "stuck_detected")[0]["reason"] == "error_loop"
    tool_messages = [m for m in engine.messages if m.role == Role.TOOL]
    assert tool_messages[0].content == "Error: No such file: f0.txt"


def test_model_error_ends_run_and_calls_on_error(tmp_path: Path) -> None:
    errors: list[LoopError] = []
    model = _ScriptedModel(_reply(), RuntimeError("overloaded"))
    engine = _engine(tmp_path, model, hooks={"on_error": errors.append})
    result = engine.run_sync()

    assert result.reason == EndReason.ERROR
    assert result.iterations == 2
    assert result.error is not None
    assert result.error.code == "MODEL_CALL_ERROR"
    assert result.error.message == "overloaded"
    assert [e.code for e in errors] == ["MODEL_CALL_ERROR"]
    events = _events(tmp_path)
    assert _types(events, "agent_error")[0]["code"] == "MODEL_CALL_ERROR"
    assert events[-1]["type"] == "summary"


def test_hook_failure_becomes_error_result_and_cleanup_still_runs(tmp_path: Path) -> None:
    processes = _CountingProcessManager()
    browser = _CountingBrowserManager()
    errors: list[LoopError] = []

    def on_update(status: Any) -> None:
        raise ValueError("hook bug")

    engine = LoopEngine(
        LoopConfig(
            model="m",
            task="t",
            workdir=str(tmp_path),
            hooks={"on_update": on_update, "on_error": errors.append},
        ),
        _ScriptedModel(),
        process_manager=processes,
        browser_manager=browser,
        tracer=TraceRecorder.disabled(),
        catalog=PromptCatalog(user_overrides=False),
    )
    result = engine.run_sync()

    assert result.reason == EndReason.ERROR
    assert result.error.code == "INTERNAL_ERROR"
    assert result.error.message == "hook bug"
    assert len(errors) == 1
    assert processes.stop_all_calls == 1
    assert browser.dispose_calls == 1


def test_cleanup_runs_exactly_once_on_completion(tmp_path: Path) -> None:
    processes = _CountingProcessManager()
    browser = _CountingBrowserManager()
    completed: list[Any] = []
    engine = LoopEngine(
        LoopConfig(
            model="m",
            task="t",
            workdir=str(tmp_path),
            hooks={"on_complete": completed.append},
        ),
        _ScriptedModel(_reply(_call("done", summary="ok"))),
        process_manager=processes,
        browser_manager=browser,
        tracer=TraceRecorder.disabled(),
        catalog=PromptCatalog(user_overrides=False),
    )
    result = engine.run_sync()

    assert result.success is True
    assert result.trace_path is None
    assert completed == [result]
    assert processes.stop_all_calls == 1
    assert browser.dispose_calls == 1


@pytest.mark.integration
@pytest.mark.posix
def test_injected_empty_process_manager_is_used_and_cleaned_up(tmp_path: Path) -> None:
    class _TrackingProcessManager(ProcessManager):
        stop_all_calls = 0

        def stop_all(self) -> None:
            self.stop_all_calls += 1
            super().stop_all()

    processes = _TrackingProcessManager(str(tmp_path), grace_period=1.0)
    assert len(processes) == 0
    running_during_run: list[bool] = []

    engine = LoopEngine(
        LoopConfig(
            model="m",
            task="t",
            workdir=str(tmp_path),
            hooks={"on_update": lambda status: running_during_run.append(processes.is_running("srv"))},
        ),
        _ScriptedModel(
            _reply(_call("startProcess", name="srv", command="sleep 30", readyTimeout=0.5)),
            _reply(_call("done", summary="ok")),
        ),
        process_manager=processes,
        browser_manager=_CountingBrowserManager(),
        tracer=TraceRecorder.disabled(),
        catalog=PromptCatalog(user_overrides=False),
    )
    assert engine.process_manager is processes

    result = engine.run_sync()

    assert result.success is True
    assert running_during_run == [True]
    assert processes.stop_all_calls == 1
    assert processes.is_running("srv") is False
    assert len(processes) == 0


def test_stop_from_update_hook_ends_before_next_iteration(tmp_path: Path) -> None:
    holder: dict[str, LoopEngine] = {}

    def on_update(status: Any) -> None:
        holder["engine"].stop()

    engine = _engine(tmp_path, _ScriptedModel(), hooks={"on_update": on_update})
    holder["engine"] = engine
    result = engine.run_sync()

    assert result.reason == EndReason.STOPPED
    assert result.iterations == 1
    assert engine.stop_requested is True
    assert engine.get_status().phase == LoopPhase.STOPPED


def test_stop_before_run_performs_no_iterations(tmp_path: Path) -> None:
    model = _ScriptedModel()
    engine = _engine(tmp_path, model)
    engine.stop()
    result = engine.run_sync()
    assert result.reason == EndReason.STOPPED
    assert result.iterations == 0
    assert model.requests == []


def test_cost_limit(tmp_path: Path) -> None:
    model = _ScriptedModel(*[_reply(text=f"step {i}", cost=0.6) for i in range(5)])
    result = _engine(tmp_path, model, limits={"max_cost": 1.0}).run_sync()
    assert result.reason == EndReason.MAX_COST
    assert result.iterations == 2
    assert result.cost == pytest.approx(1.2)


def test_timeout_uses_injected_clock(tmp_path: Path) -> None:
    ticks = iter(range(0, 10_000, 100))
    engine = LoopEngine(
        LoopConfig(model="m", task="t", workdir=str(tmp_path), limits={"timeout": "1m"}),
        _ScriptedModel(),
        tracer=TraceRecorder.disabled(),
        catalog=PromptCatalog(user_overrides=False),
        clock=lambda: float(next(ticks)),
    )
    result = engine.run_sync()
    assert result.reason == EndReason.TIMEOUT
    assert result.iterations == 1


def test_external_nudge_is_delivered_next_iteration(tmp_path: Path) -> None:
    model = _ScriptedModel()
    engine = _engine(tmp_path, model, limits={"max_iterations": 2})
    engine.nudge("Check the README first.")
    engine.run_sync()

    first = model.requests[0].messages
    assert [m.role for m in first] == [Role.USER, Role.SYSTEM]
    assert first[1].content == "[System Nudge]: Check the README first."
    second_systems = [m for m in model.requests[1].messages if m.role == Role.SYSTEM]
    assert len(second_systems) == 1
    nudge = _types(_events(tmp_path), "nudge_injected")[0]
    assert nudge["source"] == "external"
    assert nudge["iter"] == 1


def test_blank_nudge_rejected(tmp_path: Path) -> None:
    engine = _engine(tmp_path, _ScriptedModel())
    with pytest.raises(ValueError):
        engine.nudge("   ")


def test_run_may_only_be_called_once(tmp_path: Path) -> None:
    engine = _engine(tmp_path, _ScriptedModel(), limits={"max_iterations": 1})
    engine.run_sync()
    with pytest.raises(RunAlreadyStartedError):
        engine.run_sync()


def test_async_model_client_is_awaited(tmp_path: Path) -> None:
    model = _AsyncScriptedModel(_reply(_call("done", summary="async ok")))
    result = _engine(tmp_path, model).run_sync()
    assert result.success is True
    assert result.summary == "async ok"


def test_status_and_history_are_snapshots(tmp_path: Path) -> None:
    model = _ScriptedModel(_reply(_call("bash", command="ls")))
    engine = _engine(
        tmp_path, model, tools=[_fake_bash()], default_tools=False, limits={"max_iterations": 1}
    )
    assert engine.get_status().phase == LoopPhase.IDLE
    engine.run_sync()

    status = engine.get_status()
    assert status.iteration == 1
    assert status.last_actions == ["bash"]
    history = engine.get_history()
    history[0].invocations.clear()
    assert engine.get_history()[0].invocations[0].name == "bash"


def test_context_is_compacted_when_over_ceiling(tmp_path: Path) -> None:
    def big(command: str) -> str:
        return "line of output\n" * 400

    tool = ToolDefinition("bash", "Run.", big)
    model = _ScriptedModel(*[_reply(_call("bash", command=f"cmd {i}")) for i in range(6)])
    engine = _engine(
        tmp_path,
        model,
        tools=[tool],
        default_tools=False,
        limits={"max_iterations": 6},
        compaction={"max_context_tokens": 3000, "keep_recent": 2},
        stuck_detection={"enabled": False},
    )
    engine.run_sync()

    events = _events(tmp_path)
    summarized = _types(events, "context_summarized")
    assert summarized
    assert summarized[0]["strategy"] == "heuristic"
    assert any(m.is_summary for m in engine.messages)
    assert _types(events, "context_analysis")
