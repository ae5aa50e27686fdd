"""Loop engine.

The :class:`LoopEngine` drives one autonomous run: it prompts the model,
executes the tool calls it asks for, and after every iteration checks
completion, limits and stuck patterns until one of them ends the run.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

from agentloop.completion import CompletionEvaluator
from agentloop.context import ContextCompactor, estimate_tokens, largest_messages
from agentloop.errors import AgentLoopError, ModelCallError, RunAlreadyStartedError
from agentloop.managers.browser import BrowserManager
from agentloop.managers.process import ProcessManager
from agentloop.model import maybe_await, response_cost
from agentloop.prompts import PromptCatalog, build_iteration_message, build_system_prompt
from agentloop.redaction import format_prompt_log_line
from agentloop.schemas import (
    CompletionContext,
    EndReason,
    Iteration,
    LoopConfig,
    LoopError,
    LoopPhase,
    LoopResult,
    LoopStatus,
    Message,
    ModelRequest,
    ModelResponse,
    Role,
    StuckContext,
    StuckVerdict,
    TokenUsage,
    ToolCallRequest,
    ToolInvocation,
)
from agentloop.stuck import detect
from agentloop.tools import ToolRegistry, build_registry, format_tool_output, split_images
from agentloop.tracer import TraceRecorder

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIN_RETAINED_ITERATIONS: int = 100
"""Iterations kept for ``get_history``; never fewer than stuck detection needs."""

_PHASE_FOR_REASON = {
    EndReason.COMPLETED: LoopPhase.DONE,
    EndReason.STOPPED: LoopPhase.STOPPED,
}


def _add_usage(total: TokenUsage, extra: TokenUsage) -> TokenUsage:
    return TokenUsage(input=total.input + extra.input, output=total.output + extra.output)


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------

class LoopEngine:
    """Runs the observe/call/execute loop for a single task.

    Parameters
    ----------
    config:
        Immutable run configuration.
    model_client:
        Object with ``complete(ModelRequest) -> ModelResponse`` (sync or async).
    process_manager / browser_manager:
        Resource owners; created per run when omitted. Both are cleaned up
        exactly once when the run ends, however it ends.
    tracer:
        Trace sink; built from ``config.trace`` (and the trace environment
        variables) when omitted.
    clock:
        Monotonic seconds, injectable for tests.
    """

    def __init__(
        self,
        config: LoopConfig,
        model_client: Any,
        *,
        process_manager: ProcessManager | None = None,
        browser_manager: BrowserManager | None = None,
        tracer: TraceRecorder | None = None,
        catalog: PromptCatalog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.model_client = model_client
        self.catalog = catalog if catalog is not None else PromptCatalog()
        self.process_manager = process_manager if process_manager is not None else ProcessManager(config.workdir)
        self.browser_manager = (
            browser_manager if browser_manager is not None else BrowserManager(headless=config.headless_browser)
        )
        self.tracer = tracer if tracer is not None else TraceRecorder.from_config(config.trace)
        self._clock = clock

        self.id = uuid.uuid4().hex[:12]
        self._stop_event = threading.Event()
        self._started = False
        self._cleaned_up = False
        self._error_hook_called = False
        self._phase = LoopPhase.IDLE
        self._started_at: float | None = None
        self._finished_at: float | None = None

        self._iteration = 0
        self._cost = 0.0
        self._tokens = TokenUsage()
        self._history: deque[Iteration] = deque(
            maxlen=max(MIN_RETAINED_ITERATIONS, config.stuck_detection.history_size)
        )
        self._nudge_boundary = 0
        self._messages: list[Message] = []
        self._files_modified: set[str] = set()
        self._summary = ""
        self._pending_nudge: str | None = None
        self._nudge_delivered = False
        self._system_prompt = ""

    # ------------------------------------------------------------------
    # Public control surface
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Ask the loop to stop before its next iteration."""
        self._stop_event.set()
        logger.info("Stop requested for loop %s", self.id)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def nudge(self, message: str) -> None:
        """Queue guidance for the model; delivered at the start of the next iteration."""
        if not (message or "").strip():
            raise ValueError("nudge message must be a non-empty string")
        self._pending_nudge = message
        self._nudge_delivered = False
        logger.info("External nudge queued for loop %s", self.id)

    def get_status(self) -> LoopStatus:
        last = self._history[-1] if self._history else None
        return LoopStatus(
            id=self.id,
            phase=self._phase,
            iteration=self._iteration,
            cost=self._cost,
            tokens=self._tokens.model_copy(),
            elapsed_ms=self._elapsed() * 1000.0,
            last_actions=[inv.name for inv in last.invocations] if last else [],
        )

    def get_history(self) -> list[Iteration]:
        return [it.model_copy(deep=True) for it in self._history]

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def run_sync(self) -> LoopResult:
        """Blocking wrapper around :meth:`run`."""
        return asyncio.run(self.run())

    async def run(self) -> LoopResult:
        """Run the loop to completion. May only be called once per engine."""
        if self._started:
            raise RunAlreadyStartedError("LoopEngine.run() may only be called once")
        self._started = True
        self._started_at = self._clock()
        self._phase = LoopPhase.RUNNING

        cfg = self.config
        result: LoopResult | None = None
        try:
            registry = build_registry(
                workdir=cfg.workdir,
                process_manager=self.process_manager,
                browser_manager=self.browser_manager,
                custom_tools=cfg.tools,
                default_tools=cfg.default_tools,
                should_stop=self._stop_event.is_set,
            )
            self._system_prompt = build_system_prompt(
                cfg.task,
                rules=cfg.rules,
                context_text=cfg.context_text,
                context_files=cfg.context_files,
                custom_system_prompt=cfg.system_prompt,
                catalog=self.catalog,
            )
            compactor = ContextCompactor(
                cfg.compaction,
                model_client=self.model_client,
                model=cfg.model,
                catalog=self.catalog,
            )
            evaluator = CompletionEvaluator(cfg.completion, workdir=cfg.workdir)
            missing = sorted(evaluator.watched_tools - set(registry.names()))
            if missing:
                logger.warning("Completion waits on tool(s) that are not registered: %s", ", ".join(missing))

            self._trace_start(registry)
            logger.info(
                "Starting loop %s: model=%s, max_iterations=%d, max_cost=$%.2f",
                self.id,
                cfg.model,
                cfg.limits.max_iterations,
                cfg.limits.max_cost,
            )
            logger.debug(format_prompt_log_line(self._system_prompt, label="System prompt"))

            result = await self._loop(registry, compactor, evaluator)
            await self._call_hook("on_complete", result)
        except Exception as exc:
            result = await self._crash(exc)
        finally:
            await self._cleanup()

        self.tracer.record_agent_complete(result, files_modified=sorted(self._files_modified))
        self.tracer.close()
        return result

    # ------------------------------------------------------------------
    # Loop body
    # ------------------------------------------------------------------

    async def _loop(
        self,
        registry: ToolRegistry,
        compactor: ContextCompactor,
        evaluator: CompletionEvaluator,
    ) -> LoopResult:
        cfg = self.config
        limits = cfg.limits

        while True:
            if self._stop_event.is_set():
                return self._finish(EndReason.STOPPED)

            self._iteration += 1
            n = self._iteration
            iter_started = self._clock()
            logger.info("──── Iteration %d / %d ────", n, limits.max_iterations)

            # Prompting
            await self._maybe_compact(compactor, n)
            header = build_iteration_message(
                n,
                max_iterations=limits.max_iterations,
                cost=self._cost,
                max_cost=limits.max_cost,
                catalog=self.catalog,
            )
            self._messages.append(Message(role=Role.USER, content=header))
            nudge_text = self._deliver_nudge(n)
            self.tracer.record_iteration_start(n, cost=self._cost, tokens=self._tokens)
            self.tracer.record_message(n, Role.USER.value, header)
            self._trace_context(n, compactor)

            # Model call
            request = ModelRequest(
                model=cfg.model,
                system_prompt=self._system_prompt,
                messages=list(self._messages),
                tools=registry.schemas(),
                max_output_tokens=cfg.max_output_tokens,
            )
            try:
                response = await maybe_await(self.model_client.complete(request))
                if not isinstance(response, ModelResponse):
                    response = ModelResponse.model_validate(response)
            except Exception as exc:
                return await self._model_failure(exc, n)

            usage = TokenUsage(input=response.usage.input_tokens, output=response.usage.output_tokens)
            cost = response_cost(self.model_client, cfg.model, response)
            self._tokens = _add_usage(self._tokens, usage)
            self._cost += cost
            tool_calls = [
                call if call.id else call.model_copy(update={"id": f"call_{n}_{i}"})
                for i, call in enumerate(response.tool_calls)
            ]
            self.tracer.record_model_response(
                n,
                text=response.text,
                tool_names=[c.name for c in tool_calls],
                tokens=usage,
                cost=cost,
            )
            self._messages.append(Message(role=Role.ASSISTANT, content=response.text, tool_calls=tool_calls))
            if response.text:
                self.tracer.record_message(n, Role.ASSISTANT.value, response.text)

            # Tool execution
            iteration = Iteration(
                number=n,
                tokens=usage,
                cost=cost,
                response_text=response.text,
                nudge_message=nudge_text,
            )
            tools_invoked = await self._execute_tools(n, tool_calls, registry, evaluator, iteration)
            iteration.duration_ms = (self._clock() - iter_started) * 1000.0
            self._history.append(iteration)
            self.tracer.record_iteration_end(
                n,
                duration_ms=iteration.duration_ms,
                tokens=usage,
                cost=cost,
                tool_call_count=len(tool_calls),
            )
            logger.info(
                "Iteration %d: %d tool call(s), %d tokens, $%.4f (total $%.4f)",
                n,
                len(tool_calls),
                usage.total,
                cost,
                self._cost,
            )

            # Completion
            self._phase = LoopPhase.COMPLETING
            completion = await evaluator.evaluate(
                CompletionContext(
                    iteration=n,
                    cost=self._cost,
                    tokens=self._tokens.model_copy(),
                    files_modified=sorted(self._files_modified),
                    tools_invoked=tools_invoked,
                    recent_iterations=list(self._history)[-5:],
                    summary=self._summary,
                    workdir=cfg.workdir,
                )
            )
            if completion.complete:
                if completion.summary:
                    self._summary = completion.summary
                return self._finish(EndReason.COMPLETED)
            self._phase = LoopPhase.RUNNING

            # Limits
            limit_reason = self._check_limits()
            if limit_reason is not None:
                return self._finish(limit_reason)

            # Stuck detection
            verdict = detect(self._history_since_nudge(), cfg.stuck_detection)
            if verdict.is_stuck:
                ended = await self._handle_stuck(verdict, n)
                if ended is not None:
                    return ended

            await self._call_hook("on_update", self.get_status())

    async def _execute_tools(
        self,
        n: int,
        tool_calls: list[ToolCallRequest],
        registry: ToolRegistry,
        evaluator: CompletionEvaluator,
        iteration: Iteration,
    ) -> list[str]:
        """Run tool calls in order; returns the names of the ones that succeeded."""
        succeeded: list[str] = []
        watched = evaluator.watched_tools
        for call in tool_calls:
            invocation = ToolInvocation(name=call.name, args=call.arguments, call_id=call.id)
            self.tracer.record_tool_call(n, invocation.name, invocation.args)
            outcome = await registry.execute(invocation)
            result = outcome.result
            iteration.invocations.append(invocation)
            iteration.results.append(result)

            if outcome.raised:
                self.tracer.record_tool_error(n, result.name, outcome.exception, duration_ms=result.duration_ms)
            else:
                self.tracer.record_tool_result(
                    n,
                    result.name,
                    result.output,
                    duration_ms=result.duration_ms,
                    success=result.success,
                    error=result.error,
                )

            if result.success:
                succeeded.append(result.name)
                tool = registry.get(result.name)
                if tool is not None and tool.writes_path_arg:
                    path = invocation.args.get(tool.writes_path_arg)
                    if path:
                        self._files_modified.add(str(path))
                        iteration.files_modified.append(str(path))
                if result.name in watched:
                    summary = invocation.args.get("summary")
                    if summary:
                        self._summary = str(summary)

            output, images = split_images(result.output)
            if outcome.raised:
                content = f"Error: {result.error}"
            else:
                content = format_tool_output(output)
            self._messages.append(
                Message(
                    role=Role.TOOL,
                    content=content,
                    tool_call_id=call.id,
                    name=result.name,
                    images=images,
                )
            )
        return succeeded

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _maybe_compact(self, compactor: ContextCompactor, n: int) -> None:
        if not compactor.needs_compaction(self._messages, self._system_prompt):
            return
        outcome = await compactor.compact(self._messages, self._system_prompt)
        if not outcome.compacted:
            return
        self._messages = outcome.messages
        self._tokens = _add_usage(self._tokens, outcome.usage)
        self._cost += outcome.cost
        self.tracer.record_context_summarized(
            n,
            original_tokens=outcome.original_tokens,
            new_tokens=outcome.new_tokens,
            messages_summarized=outcome.messages_summarized,
            strategy=outcome.strategy,
        )

    def _deliver_nudge(self, n: int) -> str | None:
        """Make sure a pending nudge is in the conversation, then clear it."""
        nudge = self._pending_nudge
        if nudge is None:
            return None
        if not self._nudge_delivered:
            text = self.catalog.format_nudge(nudge)
            self._messages.append(Message(role=Role.SYSTEM, content=text))
            self.tracer.record_message(n, Role.SYSTEM.value, text)
            self.tracer.record_nudge(n, nudge, source="external")
            self._nudge_boundary = n - 1
        self._pending_nudge = None
        self._nudge_delivered = False
        return nudge

    def _trace_context(self, n: int, compactor: ContextCompactor) -> None:
        cpt = self.config.compaction.chars_per_token
        self.tracer.record_context_analysis(
            n,
            system_prompt_tokens=estimate_tokens([], self._system_prompt, chars_per_token=cpt),
            message_count=len(self._messages),
            total_message_tokens=compactor.estimate(self._messages),
            largest_messages=largest_messages(self._messages, chars_per_token=cpt),
        )

    def _check_limits(self) -> EndReason | None:
        limits = self.config.limits
        if self._iteration >= limits.max_iterations:
            return EndReason.MAX_ITERATIONS
        if self._cost >= limits.max_cost:
            return EndReason.MAX_COST
        if self._elapsed() >= limits.timeout:
            return EndReason.TIMEOUT
        return None

    def _history_since_nudge(self) -> list[Iteration]:
        return [it for it in self._history if it.number > self._nudge_boundary]

    async def _handle_stuck(self, verdict: StuckVerdict, n: int) -> LoopResult | None:
        self._phase = LoopPhase.STUCK
        logger.warning("Stuck at iteration %d (%s): %s", n, verdict.reason.value, verdict.details)
        self.tracer.record_stuck(n, verdict.reason.value, verdict.details)

        context = StuckContext(verdict=verdict, iteration=n, recent_iterations=self._history_since_nudge())
        hook = self.config.hooks.on_stuck
        if hook is not None:
            nudge = await maybe_await(hook(context))
            source = "hook"
        else:
            nudge = self.catalog.nudge(verdict.reason)
            source = "default"

        if not nudge or not str(nudge).strip():
            logger.warning("No nudge supplied; ending run as stuck")
            return self._finish(EndReason.STUCK, details=verdict.details)

        nudge = str(nudge)
        text = self.catalog.format_nudge(nudge)
        self._messages.append(Message(role=Role.SYSTEM, content=text))
        self._pending_nudge = nudge
        self._nudge_delivered = True
        self._nudge_boundary = n
        self.tracer.record_nudge(n, nudge, source=source)
        self._phase = LoopPhase.RUNNING
        return None

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else self._clock()
        return max(0.0, end - self._started_at)

    def _finish(
        self,
        reason: EndReason,
        *,
        error: LoopError | None = None,
        details: str | None = None,
    ) -> LoopResult:
        self._finished_at = self._clock()
        self._phase = _PHASE_FOR_REASON.get(reason, LoopPhase.FAILED)
        success = reason == EndReason.COMPLETED
        summary = self._summary
        if not summary:
            summary = "Task completed" if success else f"Task ended: {reason.value}"
            if details:
                summary = f"{summary} ({details})"
        logger.info(
            "Loop finished: %s after %d iteration(s), $%.4f, %d tokens",
            reason.value,
            self._iteration,
            self._cost,
            self._tokens.total,
        )
        return LoopResult(
            success=success,
            reason=reason,
            iterations=self._iteration,
            cost=self._cost,
            tokens=self._tokens.model_copy(),
            elapsed_ms=self._elapsed() * 1000.0,
            summary=summary,
            error=error,
            trace_path=str(self.tracer.path) if self.tracer.enabled else None,
        )

    async def _model_failure(self, exc: Exception, n: int) -> LoopResult:
        logger.error("Model call failed at iteration %d: %s", n, exc)
        error = LoopError(
            code=ModelCallError.code,
            message=str(exc) or type(exc).__name__,
            cause=exc,
        )
        self.tracer.record_agent_error(exc, code=error.code)
        self._error_hook_called = True
        await self._call_hook("on_error", error)
        return self._finish(EndReason.ERROR, error=error)

    async def _crash(self, exc: Exception) -> LoopResult:
        """Turn an unexpected exception (including one raised by a hook) into an error result."""
        logger.exception("Loop %s crashed: %s", self.id, exc)
        code = exc.code if isinstance(exc, AgentLoopError) else "INTERNAL_ERROR"
        error = LoopError(code=code, message=str(exc) or type(exc).__name__, cause=exc)
        self.tracer.record_agent_error(exc, code=code)
        if not self._error_hook_called:
            self._error_hook_called = True
            try:
                await self._call_hook("on_error", error)
            except Exception as hook_exc:
                logger.warning("on_error hook raised: %s", hook_exc)
        return self._finish(EndReason.ERROR, error=error)

    async def _cleanup(self) -> None:
        """Stop background processes and dispose the browser, exactly once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        try:
            await asyncio.to_thread(self.process_manager.stop_all)
        except Exception as exc:
            logger.warning("Stopping background processes failed: %s", exc)
        try:
            await self.browser_manager.dispose()
        except Exception as exc:
            logger.warning("Disposing browser failed: %s", exc)

    async def _call_hook(self, name: str, *args: Any) -> Any:
        hook = getattr(self.config.hooks, name)
        if hook is None:
            return None
        return await maybe_await(hook(*args))

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    def _trace_start(self, registry: ToolRegistry) -> None:
        cfg = self.config
        self.tracer.record_agent_start(self.id, cfg.task, cfg.model)
        self.tracer.record_config(
            limits=cfg.limits.model_dump(),
            completion=[
                spec.model_dump(exclude={"check"}) for spec in cfg.completion
            ],
            stuck_detection=cfg.stuck_detection.model_dump(),
            rules=list(cfg.rules),
            tools=registry.names(),
        )
        self.tracer.record_system_prompt(self._system_prompt)
