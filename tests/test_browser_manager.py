"""Unit tests for the browser manager and browser tools (Playwright replaced by fakes)."""

from __future__ import annotations

import asyncio
import base64
import io
from typing import Any

import pytest
from PIL import Image

from agentloop.errors import BrowserDisposedError
from agentloop.managers.browser import BrowserManager, compress_screenshot
from agentloop.schemas import ToolInvocation
from agentloop.tools.browser import create_browser_tools
from agentloop.tools.registry import ToolRegistry


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


def _png(width: int = 2048, height: int = 1024, mode: str = "RGBA") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color=(10, 120, 200, 255)[: len(mode)]).save(buf, format="PNG")
    return buf.getvalue()


class _RecordingMouse:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self._calls = calls

    async def wheel(self, dx: int, dy: int) -> None:
        self._calls.append(("mouse.wheel", dx, dy))


class _ConsoleMessage:
    def __init__(self, type_: str, text: str) -> None:
        self.type = type_
        self.text = text


class _RecordingPage:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self._calls = calls
        self.url = "about:blank"
        self.mouse = _RecordingMouse(calls)
        self.listeners: dict[str, Any] = {}

    def on(self, event: str, handler: Any) -> None:
        self.listeners[event] = handler

    async def goto(self, url: str, timeout: int = 0) -> None:
        self._calls.append(("goto", url))
        self.url = url

    async def wait_for_load_state(self, state: str) -> None:
        self._calls.append(("wait_for_load_state", state))

    async def screenshot(self, type: str = "png", full_page: bool = False) -> bytes:
        self._calls.append(("screenshot", full_page))
        return _png()

    async def click(self, selector: str, timeout: int = 0) -> None:
        self._calls.append(("click", selector))

    async def fill(self, selector: str, text: str, timeout: int = 0) -> None:
        self._calls.append(("fill", selector, text))

    async def close(self) -> None:
        self._calls.append(("page.close",))


class _RecordingBrowser:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self._calls = calls

    async def close(self) -> None:
        self._calls.append(("browser.close",))


class _RecordingPlaywright:
    def __init__(self, calls: list[tuple[Any, ...]]) -> None:
        self._calls = calls

    async def stop(self) -> None:
        self._calls.append(("playwright.stop",))


def _manager(calls: list[tuple[Any, ...]], **kwargs: Any) -> tuple[BrowserManager, list[_RecordingPage]]:
    pages: list[_RecordingPage] = []

    async def launcher(headless: bool, width: int, height: int):
        calls.append(("launch", headless, width, height))
        page = _RecordingPage(calls)
        pages.append(page)
        return _RecordingPlaywright(calls), _RecordingBrowser(calls), page

    return BrowserManager(launcher=launcher, **kwargs), pages


def test_compress_screenshot_downscales_and_reencodes_as_jpeg() -> None:
    jpeg = compress_screenshot(_png(2048, 1024))
    with Image.open(io.BytesIO(jpeg)) as img:
        assert img.format == "JPEG"
        assert img.size == (1024, 512)


def test_compress_screenshot_keeps_small_images_size() -> None:
    jpeg = compress_screenshot(_png(640, 480, mode="RGB"))
    with Image.open(io.BytesIO(jpeg)) as img:
        assert img.size == (640, 480)


def test_browser_launches_lazily_once() -> None:
    calls: list[tuple[Any, ...]] = []
    manager, _pages = _manager(calls, headless=False, width=800, height=600)
    assert manager.is_open is False

    async def scenario() -> str:
        await manager.open()
        return await manager.navigate("http://localhost:3000")

    assert _run(scenario()) == "http://localhost:3000"
    assert [c for c in calls if c[0] == "launch"] == [("launch", False, 800, 600)]
    assert ("goto", "http://localhost:3000") in calls
    assert manager.is_open is True


def test_actions_drive_the_page() -> None:
    calls: list[tuple[Any, ...]] = []
    manager, _pages = _manager(calls)

    async def scenario() -> None:
        await manager.click("#submit")
        await manager.type("input[name=q]", "hello")
        await manager.scroll("up", 200)
        await manager.scroll("right", 50)

    _run(scenario())
    assert ("click", "#submit") in calls
    assert ("fill", "input[name=q]", "hello") in calls
    assert ("mouse.wheel", 0, -200) in calls
    assert ("mouse.wheel", 50, 0) in calls


def test_scroll_rejects_unknown_direction() -> None:
    manager, _pages = _manager([])
    with pytest.raises(ValueError):
        _run(manager.scroll("sideways"))


def test_console_errors_are_collected_and_cleared() -> None:
    calls: list[tuple[Any, ...]] = []
    manager, pages = _manager(calls)
    _run(manager.open())
    page = pages[0]
    page.listeners["console"](_ConsoleMessage("log", "fine"))
    page.listeners["console"](_ConsoleMessage("error", "Uncaught TypeError"))
    page.listeners["pageerror"]("ReferenceError: x is not defined")

    assert manager.console_errors(clear=True) == [
        "Uncaught TypeError",
        "pageerror: ReferenceError: x is not defined",
    ]
    assert manager.console_errors() == []


def test_dispose_runs_once_and_blocks_further_use() -> None:
    calls: list[tuple[Any, ...]] = []
    manager, _pages = _manager(calls)

    async def scenario() -> None:
        await manager.open("http://example.test")
        await manager.dispose()
        await manager.dispose()

    _run(scenario())
    assert calls.count(("browser.close",)) == 1
    assert calls.count(("playwright.stop",)) == 1
    assert manager.is_disposed is True
    assert manager.is_open is False
    with pytest.raises(BrowserDisposedError):
        _run(manager.screenshot())


def test_dispose_without_launch_does_nothing() -> None:
    calls: list[tuple[Any, ...]] = []
    manager, _pages = _manager(calls)
    _run(manager.dispose())
    assert calls == []


def test_browser_tools_return_screenshot_and_console_errors() -> None:
    calls: list[tuple[Any, ...]] = []
    manager, pages = _manager(calls)
    registry = ToolRegistry(create_browser_tools(manager))
    assert set(registry.names()) == {"openBrowser", "navigate", "screenshot", "click", "type", "scroll"}

    async def scenario():
        opened = await registry.execute(ToolInvocation(name="openBrowser", args={"url": "http://app.test"}))
        pages[0].listeners["console"](_ConsoleMessage("error", "boom"))
        shot = await registry.execute(ToolInvocation(name="screenshot", args={"fullPage": True}))
        return opened, shot

    opened, shot = _run(scenario())
    assert opened.result.success is True
    assert opened.result.output["url"] == "http://app.test"
    jpeg = base64.b64decode(opened.result.output["screenshot"])
    assert jpeg[:2] == b"\xff\xd8"
    assert shot.result.output["console_errors"] == ["boom"]
    assert ("screenshot", True) in calls


def test_scroll_tool_validates_direction() -> None:
    manager, _pages = _manager([])
    registry = ToolRegistry(create_browser_tools(manager))
    outcome = _run(registry.execute(ToolInvocation(name="scroll", args={"direction": "diagonal"})))
    assert outcome.raised
    assert "Invalid arguments for scroll" in outcome.result.error
