#!/usr/bin/env python3
"""Example: run the agent loop programmatically with hooks and a custom tool.

Usage:
    python examples/run_loop.py /path/to/project "Make the test suite pass" --max-iterations 20
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from agentloop import CommandCompletion, LoopConfig, LoopEngine, LoopHooks, ToolCallCompletion, ToolDefinition
from agentloop.providers import create_model_client, provider_from_model


def _count_todos(workdir: Path):
    def count_todos(path: str = ".") -> dict:
        root = workdir / path
        hits = [
            str(p.relative_to(workdir))
            for p in root.rglob("*.py")
            if "TODO" in p.read_text(encoding="utf-8", errors="replace")
        ]
        return {"files_with_todos": hits, "count": len(hits)}

    return ToolDefinition(
        "countTodos",
        "List Python files under a directory that still contain TODO markers.",
        count_todos,
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Directory relative to the project"}},
        },
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the agent loop on a project.")
    parser.add_argument("workdir", help="Path to the project")
    parser.add_argument("task", help="Task in natural language")
    parser.add_argument("--model", default="claude-sonnet-4-20250514")
    parser.add_argument("--max-iterations", type=int, default=20)
    parser.add_argument("--max-cost", type=float, default=5.0)
    parser.add_argument("--test-cmd", default=None, help="Finish as soon as this command exits 0")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )

    workdir = Path(args.workdir).resolve()
    completion = [ToolCallCompletion()]
    if args.test_cmd:
        completion.append(CommandCompletion(command=args.test_cmd))

    def on_update(status):
        print(f"  iteration {status.iteration}: ${status.cost:.3f}, actions={status.last_actions}")

    def on_stuck(ctx):
        print(f"  stuck ({ctx.reason.value}): {ctx.details}")
        return "Stop repeating yourself. Re-read the last error and try a different approach."

    config = LoopConfig(
        model=args.model,
        task=args.task,
        workdir=str(workdir),
        rules=["builtin:test_first", "builtin:minimal_changes"],
        limits={"max_iterations": args.max_iterations, "max_cost": args.max_cost},
        completion=completion,
        tools=[_count_todos(workdir)],
        hooks=LoopHooks(on_update=on_update, on_stuck=on_stuck),
        trace=True,
    )
    client = create_model_client(provider_from_model(args.model))
    result = LoopEngine(config, client).run_sync()

    print(f"\n{'=' * 60}")
    print(f"  Result:     {result.reason.value}")
    print(f"  Iterations: {result.iterations}")
    print(f"  Cost:       ${result.cost:.4f}")
    print(f"  Tokens:     {result.tokens.total}")
    print(f"  Summary:    {result.summary}")
    if result.trace_path:
        print(f"  Trace:      {result.trace_path}")
    print(f"{'=' * 60}")
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
