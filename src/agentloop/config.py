"""YAML run configuration for the CLI.

A config file holds the :class:`~agentloop.schemas.LoopConfig` fields plus an
optional ``provider``; ``context_files`` may list plain paths, which are read
relative to ``workdir``::

    model: claude-sonnet-4-20250514
    provider: anthropic
    task: Fix the failing tests in tests/test_api.py
    rules: [builtin:test_first, builtin:minimal_changes]
    limits: {max_iterations: 30, max_cost: 5, timeout: 45m}
    completion:
      - {type: command, command: pytest -q}
    context_files: [README.md]
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from agentloop.providers import provider_from_model
from agentloop.schemas import ContextFile, LoopConfig

logger = logging.getLogger(__name__)


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML config file. Raises ``ValueError`` when it is not a mapping."""
    source = Path(path)
    data = yaml.safe_load(source.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{source}: top level must be a mapping, got {type(data).__name__}")
    return data


def _load_context_files(entries: list[Any], workdir: Path) -> list[ContextFile]:
    files: list[ContextFile] = []
    for entry in entries:
        if isinstance(entry, dict):
            files.append(ContextFile.model_validate(entry))
            continue
        rel = str(entry)
        target = Path(rel).expanduser()
        if not target.is_absolute():
            target = workdir / target
        files.append(ContextFile(path=rel, content=target.read_text(encoding="utf-8", errors="replace")))
    return files


def build_loop_config(data: dict[str, Any], **overrides: Any) -> tuple[LoopConfig, str]:
    """Validate raw config (with CLI overrides applied) into a ``LoopConfig`` and a provider name.

    ``None`` overrides are ignored. ``max_iterations`` / ``max_cost`` overrides
    land in ``limits``.
    """
    merged = dict(data)
    limits = dict(merged.get("limits") or {})
    for key in ("max_iterations", "max_cost", "timeout"):
        value = overrides.pop(key, None)
        if value is not None:
            limits[key] = value
    if limits:
        merged["limits"] = limits
    merged.update({k: v for k, v in overrides.items() if v is not None})

    provider = str(merged.pop("provider", "") or "").strip().lower()
    workdir = Path(str(merged.get("workdir") or Path.cwd())).expanduser().resolve()
    merged["workdir"] = str(workdir)
    if merged.get("context_files"):
        merged["context_files"] = _load_context_files(list(merged["context_files"]), workdir)

    config = LoopConfig.model_validate(merged)
    if not provider:
        provider = provider_from_model(config.model)
        if provider == "unknown":
            raise ValueError(
                f"Cannot infer provider for model '{config.model}'; set 'provider' or pass --provider"
            )
        logger.debug("Inferred provider %s from model %s", provider, config.model)
    return config, provider
