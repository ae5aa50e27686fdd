"""Prompt catalog and prompt assembly.

Every prompt the loop engine uses is stored in ``templates.yaml`` (next to
this module) and loaded by :class:`PromptCatalog`, including the built-in
behavioural rules exposed by ``python -m agentloop rules``.
"""

from agentloop.prompts.builder import build_iteration_message, build_system_prompt
from agentloop.prompts.catalog import PromptCatalog

__all__ = ["PromptCatalog", "build_iteration_message", "build_system_prompt"]
