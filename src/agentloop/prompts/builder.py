"""Assemble the system prompt and per-iteration user messages."""

from __future__ import annotations

from collections.abc import Sequence

from agentloop.prompts.catalog import PromptCatalog
from agentloop.schemas import ContextFile


def build_system_prompt(
    task: str,
    *,
    rules: Sequence[str] = (),
    context_text: str | None = None,
    context_files: Sequence[ContextFile] = (),
    custom_system_prompt: str | None = None,
    catalog: PromptCatalog | None = None,
) -> str:
    """Return the system prompt for a run.

    A custom system prompt replaces the generated one entirely. Rules may be
    literal text or ``builtin:<key>`` references into the catalog.
    """
    if custom_system_prompt:
        return custom_system_prompt

    catalog = catalog or PromptCatalog()
    sections: list[str] = [
        catalog.system("intro"),
        f"{catalog.system('task_heading')}\n\n{task.strip()}",
    ]

    resolved_rules = [catalog.resolve_rule(r).strip() for r in rules if r and r.strip()]
    if resolved_rules:
        body = "\n\n".join(resolved_rules)
        sections.append(f"{catalog.system('rules_heading')}\n\n{body}")

    if context_text and context_text.strip():
        sections.append(f"{catalog.system('context_heading')}\n\n{context_text.strip()}")

    if context_files:
        files = "\n\n".join(f"### {cf.path}\n\n```\n{cf.content.rstrip()}\n```" for cf in context_files)
        sections.append(f"{catalog.system('context_files_heading')}\n\n{files}")

    sections.append(catalog.system("guidelines"))
    sections.append(catalog.system("important"))
    return "\n\n".join(s for s in sections if s)


def build_iteration_message(
    iteration: int,
    *,
    max_iterations: int,
    cost: float,
    max_cost: float,
    catalog: PromptCatalog,
) -> str:
    """The user message opening each iteration: a budget header, plus a kick-off on turn one."""
    header = catalog.iteration_header(iteration, max_iterations, cost, max_cost)
    if iteration == 1:
        return f"{header}\n\n{catalog.first_turn()}"
    return header
