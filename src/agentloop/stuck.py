"""Stuck-pattern detection over the rolling iteration history.

``detect`` is a pure function: it looks only at the iterations it is given
and the thresholds in :class:`StuckDetectionConfig`. The engine passes the
history since the most recent nudge, so a nudge resets detection.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence

from agentloop.schemas import Iteration, StuckDetectionConfig, StuckReason, StuckVerdict

_DIGITS_RE = re.compile(r"\d+")
_WS_RE = re.compile(r"\s+")
_MAX_ERROR_KEY = 200


def normalize_error(text: str) -> str:
    """Collapse volatile detail (numbers, whitespace, case) so equal failures compare equal."""
    lowered = _DIGITS_RE.sub("#", (text or "").lower())
    return _WS_RE.sub(" ", lowered).strip()[:_MAX_ERROR_KEY]


def _range(window: Sequence[Iteration]) -> tuple[int, int]:
    return (window[0].number, window[-1].number)


# ---------------------------------------------------------------------------
# Individual patterns
# ---------------------------------------------------------------------------

def _check_error_loop(history: Sequence[Iteration], config: StuckDetectionConfig) -> StuckVerdict:
    window = list(history[-config.window_for(StuckReason.ERROR_LOOP):])
    counts: Counter[tuple[str, str]] = Counter()
    samples: dict[tuple[str, str], str] = {}
    for it in window:
        seen: set[tuple[str, str]] = set()
        for result in it.results:
            if result.success:
                continue
            key = (result.name, normalize_error(result.error or ""))
            if key in seen:
                continue
            seen.add(key)
            counts[key] += 1
            samples.setdefault(key, result.error or "")

    if not counts:
        return StuckVerdict.none()
    key, count = counts.most_common(1)[0]
    if count < config.error_loop_threshold:
        return StuckVerdict.none()
    tool = key[0]
    sample = samples[key]
    return StuckVerdict(
        reason=StuckReason.ERROR_LOOP,
        details=f"Tool '{tool}' failed with the same error in {count} of the last {len(window)} iterations: {sample[:200]}",
        iteration_range=_range(window),
        repeated_error=sample,
    )


def _check_oscillation(history: Sequence[Iteration], config: StuckDetectionConfig) -> StuckVerdict:
    window = list(history[-config.window_for(StuckReason.OSCILLATION):])
    signatures = [it.action_signature for it in window]
    cycles = config.oscillation_threshold

    for period in range(2, config.oscillation_max_period + 1):
        span = period * cycles
        if len(signatures) < span:
            break
        tail = signatures[-span:]
        pattern = tail[:period]
        if any(not sig for sig in pattern) or len(set(pattern)) < 2:
            continue
        if all(tail[i] == pattern[i % period] for i in range(span)):
            names = " -> ".join(sig.split(":", 1)[0] for sig in pattern)
            return StuckVerdict(
                reason=StuckReason.OSCILLATION,
                details=f"Alternating between {period} actions ({names}) for {cycles} cycles",
                iteration_range=_range(window[-span:]),
            )
    return StuckVerdict.none()


def _check_repetitive(history: Sequence[Iteration], config: StuckDetectionConfig) -> StuckVerdict:
    window = list(history[-config.window_for(StuckReason.REPETITIVE):])
    threshold = config.repetitive_threshold
    if len(window) < threshold:
        return StuckVerdict.none()
    tail = window[-threshold:]
    signature = tail[-1].action_signature
    if not signature or any(it.action_signature != signature for it in tail):
        return StuckVerdict.none()

    # Extend back over the window to report the whole streak.
    streak = threshold
    for it in reversed(window[:-threshold]):
        if it.action_signature != signature:
            break
        streak += 1
    tools = ", ".join(inv.name for inv in tail[-1].invocations)
    return StuckVerdict(
        reason=StuckReason.REPETITIVE,
        details=f"Same action ({tools}) repeated {streak} times in a row",
        iteration_range=_range(window[-streak:]),
    )


def _check_no_progress(history: Sequence[Iteration], config: StuckDetectionConfig) -> StuckVerdict:
    window = list(history[-config.window_for(StuckReason.NO_PROGRESS):])
    if len(window) < config.no_progress_min_iterations:
        return StuckVerdict.none()
    if any(it.files_modified for it in window):
        return StuckVerdict.none()
    tokens = sum(it.tokens.total for it in window)
    if tokens <= config.no_progress_token_threshold:
        return StuckVerdict.none()
    return StuckVerdict(
        reason=StuckReason.NO_PROGRESS,
        details=f"{tokens} tokens used over {len(window)} iterations without modifying any file",
        iteration_range=_range(window),
    )


_CHECKS = (_check_error_loop, _check_oscillation, _check_repetitive, _check_no_progress)


def detect(history: Sequence[Iteration], config: StuckDetectionConfig) -> StuckVerdict:
    """Return the highest-priority stuck verdict for ``history``.

    Priority is error loop, then oscillation, then repetition, then lack of
    progress. Returns a ``none`` verdict when detection is disabled or too
    little history exists.
    """
    if not config.enabled or len(history) < 2:
        return StuckVerdict.none()
    for check in _CHECKS:
        verdict = check(history, config)
        if verdict.is_stuck:
            return verdict
    return StuckVerdict.none()
