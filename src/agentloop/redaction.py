"""Secret-safe text handling for logs and trace events."""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Final

_PROMPT_DEBUG_ENV: Final[str] = "AGENTLOOP_PROMPT_DEBUG"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

_ASSIGNMENT_SECRET_RE = re.compile(
    r"(?i)\b("
    r"api[_-]?key|access[_-]?token|refresh[_-]?token|client[_-]?secret|"
    r"private[_-]?key|authorization|auth[_-]?token|secret|password|passwd"
    r")\b(\s*[:=]\s*)([^\s,;\"']+)"
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([A-Za-z0-9._\-+/=]{10,})")

_KNOWN_SECRET_TOKEN_RES = (
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_-]{16,}\b"),
    re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b"),
)

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=\r\n]+$")


def is_prompt_debug_enabled() -> bool:
    """Return true when full prompt text may be logged."""
    raw = os.getenv(_PROMPT_DEBUG_ENV, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return logging.getLogger("agentloop").isEnabledFor(logging.DEBUG)


def redact_sensitive_text(text: str) -> tuple[str, int]:
    """Redact likely secrets. Returns the redacted text and the number of hits."""
    redacted = str(text or "")
    if not redacted:
        return "", 0

    hits = 0
    redacted, count = _ASSIGNMENT_SECRET_RE.subn(r"\1\2[REDACTED]", redacted)
    hits += count
    redacted, count = _BEARER_RE.subn("Bearer [REDACTED]", redacted)
    hits += count
    for pattern in _KNOWN_SECRET_TOKEN_RES:
        redacted, count = pattern.subn("[REDACTED_TOKEN]", redacted)
        hits += count
    return redacted, hits


def looks_like_base64_blob(text: str, *, min_length: int = 1000) -> bool:
    """Heuristic for large encoded binary payloads (screenshots, archives)."""
    if len(text) < min_length:
        return False
    return bool(_BASE64_RE.match(text[:200]))


def prompt_digest(text: str) -> str:
    return hashlib.sha256(str(text or "").encode("utf-8")).hexdigest()[:16]


def format_prompt_log_line(prompt: str, *, label: str = "Prompt", debug: bool | None = None) -> str:
    """Full (redacted) prompt text in debug mode, metadata only otherwise."""
    text = str(prompt or "")
    debug_enabled = is_prompt_debug_enabled() if debug is None else bool(debug)
    redacted, hits = redact_sensitive_text(text)
    if debug_enabled:
        return f"{label}: {redacted}"
    return (
        f"{label} metadata: len={len(text)}, sha256={prompt_digest(text)}, "
        f"redaction_hits={hits} (set {_PROMPT_DEBUG_ENV}=1 to include full text)"
    )
