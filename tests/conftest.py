"""Shared pytest configuration for marker registration and execution ordering."""

from __future__ import annotations

import os

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that wait on real child processes")
    config.addinivalue_line("markers", "posix: relies on POSIX process groups and signals")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""
    skip_posix = pytest.mark.skip(reason="requires POSIX process groups")

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    for item in items:
        if os.name == "nt" and item.get_closest_marker("posix"):
            item.add_marker(skip_posix)
    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _isolate_trace_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's AGENTLOOP_TRACE settings from leaking into tests."""
    monkeypatch.delenv("AGENTLOOP_TRACE", raising=False)
    monkeypatch.delenv("AGENTLOOP_TRACE_PATH", raising=False)
