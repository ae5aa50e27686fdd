"""Prompt catalog: single source of truth for every prompt the loop sends.

Loads prompts from ``templates.yaml`` (next to this module) and provides
typed accessors for the system prompt pieces, iteration headers, nudges,
summary prompts and built-in rules.

Supports a user-override file at ``~/.agentloop/prompt_overrides.yaml``
that is merged on top of the built-in defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from agentloop.schemas import StuckReason

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"
_USER_OVERRIDE = Path.home() / ".agentloop" / "prompt_overrides.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class PromptCatalog:
    """Loads and serves prompts from the YAML catalog.

    Usage::

        catalog = PromptCatalog()
        intro = catalog.system("intro")
        nudge = catalog.nudge(StuckReason.REPETITIVE)
        rule = catalog.rule("test_first")
    """

    def __init__(self, extra_path: Path | None = None, *, user_overrides: bool = True) -> None:
        self._data: dict[str, Any] = {}
        self._extra_path = extra_path
        self._user_overrides = user_overrides
        self._load()

    def _load(self) -> None:
        """Load built-in templates, then merge user overrides."""
        self._data = _load_yaml(_BUILTIN_YAML)

        if self._user_overrides and _USER_OVERRIDE.exists():
            overrides = _load_yaml(_USER_OVERRIDE)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                logger.info("Loaded prompt overrides from %s", _USER_OVERRIDE)

        if self._extra_path and self._extra_path.exists():
            extra = _load_yaml(self._extra_path)
            if extra:
                self._data = _deep_merge(self._data, extra)
                logger.info("Loaded extra prompts from %s", self._extra_path)

    def reload(self) -> None:
        """Re-read all YAML files from disk."""
        self._load()

    # ── System prompt pieces ─────────────────────────────────────

    def system(self, key: str) -> str:
        """Return a system-prompt section (intro, guidelines, important, *_heading)."""
        section = self._data.get("system", {})
        return str(section.get(key) or "").strip()

    # ── Iteration messages ───────────────────────────────────────

    def iteration_header(self, iteration: int, max_iterations: int, cost: float, max_cost: float) -> str:
        template = self._data.get("iteration", {}).get("header") or (
            "[Iteration {iteration}/{max_iterations}, Cost: ${cost:.2f}/${max_cost:.2f}]"
        )
        return template.format(
            iteration=iteration,
            max_iterations=max_iterations,
            cost=cost,
            max_cost=max_cost,
        )

    def first_turn(self) -> str:
        return str(self._data.get("iteration", {}).get("first_turn") or "Begin.").strip()

    def format_nudge(self, text: str) -> str:
        prefix = self._data.get("iteration", {}).get("nudge_prefix") or "[System Nudge]: "
        return f"{prefix}{text}"

    # ── Nudges ───────────────────────────────────────────────────

    def nudge(self, reason: StuckReason | str) -> str:
        """Return the default nudge for a stuck reason (empty for ``none``)."""
        key = reason.value if isinstance(reason, StuckReason) else str(reason)
        return str(self._data.get("nudges", {}).get(key) or "").strip()

    # ── Summaries ────────────────────────────────────────────────

    def summary(self, key: str) -> str:
        """Return a compaction prompt piece (system, request, *_heading, footer)."""
        return str(self._data.get("summary", {}).get(key) or "").strip()

    # ── Rules ────────────────────────────────────────────────────

    def rule(self, key: str) -> str:
        """Return the text of a built-in rule."""
        rules = self._data.get("rules", {})
        entry = rules.get(key)
        if not isinstance(entry, dict):
            raise KeyError(f"Unknown rule: {key}")
        return str(entry.get("text") or "").strip()

    def list_rules(self) -> list[dict[str, str]]:
        """Return a summary list of all built-in rules."""
        rules = self._data.get("rules", {})
        return [
            {
                "key": k,
                "name": v.get("name", k),
                "description": v.get("description", ""),
            }
            for k, v in rules.items()
            if isinstance(v, dict)
        ]

    def resolve_rule(self, value: str) -> str:
        """Expand ``builtin:<key>`` references; other text is returned unchanged."""
        if value.startswith("builtin:"):
            return self.rule(value.split(":", 1)[1].strip())
        return value
