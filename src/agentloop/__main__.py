"""CLI entrypoint for agentloop."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so it's found regardless of where the CLI runs."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    p = argparse.ArgumentParser(
        prog="agentloop",
        description="agentloop - run an autonomous coding agent until its task is done.",
    )
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", parents=[common], help="Run the agent loop.")
    run_p.add_argument("--config", "-c", help="YAML config file")
    run_p.add_argument("--task", help="Task description (overrides the config file)")
    run_p.add_argument("--model", help="Model name (overrides the config file)")
    run_p.add_argument(
        "--provider",
        choices=["anthropic", "openai"],
        help="Model provider (inferred from the model name when omitted)",
    )
    run_p.add_argument("--workdir", help="Project directory the agent works in (default: cwd)")
    run_p.add_argument("--max-iterations", type=int, help="Iteration limit")
    run_p.add_argument("--max-cost", type=float, help="Cost limit in USD")
    run_p.add_argument("--timeout", help="Wall-clock limit, e.g. 90s, 30m, 2h")
    run_p.add_argument("--trace", metavar="PATH", help="Write an NDJSON trace to PATH")

    sub.add_parser("rules", parents=[common], help="List the built-in rules (use as 'builtin:<key>').")

    trace_p = sub.add_parser(
        "trace-summary", parents=[common], help="Print the summary event of a trace file."
    )
    trace_p.add_argument("path", help="NDJSON trace file")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "run":
        _load_dotenv()
        return _run(args)
    if args.command == "rules":
        return _list_rules()
    if args.command == "trace-summary":
        return _trace_summary(args.path)

    parser.print_help()
    return 1


def _run(args: argparse.Namespace) -> int:
    from agentloop.config import build_loop_config, load_config_file
    from agentloop.engine import LoopEngine
    from agentloop.providers import create_model_client

    try:
        data = load_config_file(args.config) if args.config else {}
        config, provider = build_loop_config(
            data,
            task=args.task,
            model=args.model,
            provider=args.provider,
            workdir=args.workdir,
            trace=args.trace,
            max_iterations=args.max_iterations,
            max_cost=args.max_cost,
            timeout=args.timeout,
        )
    except (OSError, ValueError, ValidationError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        client = create_model_client(provider)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    engine = LoopEngine(config, client)
    try:
        result = engine.run_sync()
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130

    print(result.model_dump_json(indent=2))
    return 0 if result.success else 1


def _list_rules() -> int:
    from agentloop.prompts import PromptCatalog

    catalog = PromptCatalog()
    rules = catalog.list_rules()
    print(f"\n  Built-in rules - {len(rules)}")
    print("  " + "=" * 58)
    for entry in rules:
        print(f"\n  builtin:{entry['key']}")
        print(f"    {entry['name']}")
        if entry["description"]:
            print(f"    {entry['description']}")
    print(f"\n  Override: {Path.home() / '.agentloop' / 'prompt_overrides.yaml'}")
    print()
    return 0


def _trace_summary(path: str) -> int:
    from agentloop.tracer import read_trace

    try:
        summary = None
        for event in read_trace(path):
            if event["type"] == "summary":
                summary = event
    except OSError as exc:
        print(f"Cannot read trace: {exc}", file=sys.stderr)
        return 1
    if summary is None:
        print(f"No summary event in {path} (run still in progress or crashed?)", file=sys.stderr)
        return 1
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
