"""Browser tools for visual verification.

Every action returns a fresh screenshot (base64 JPEG) and any console errors
so the model sees the effect of what it did.
"""

from __future__ import annotations

import base64
from typing import Any, Literal

from pydantic import Field

from agentloop.managers.browser import BrowserManager
from agentloop.schemas import ToolDefinition
from agentloop.tools.builtin import ToolArgs


class OpenBrowserArgs(ToolArgs):
    url: str | None = Field(default=None, description="URL to navigate to")


class NavigateArgs(ToolArgs):
    url: str = Field(description="URL to navigate to")


class ScreenshotArgs(ToolArgs):
    full_page: bool = Field(default=False, description="Capture the full page instead of the viewport")


class ClickArgs(ToolArgs):
    selector: str = Field(description="CSS selector of the element to click")


class TypeArgs(ToolArgs):
    selector: str = Field(description="CSS selector of the input element")
    text: str = Field(description="Text to enter")


class ScrollArgs(ToolArgs):
    direction: Literal["up", "down", "left", "right"] = "down"
    amount: int = Field(default=500, ge=1, description="Pixels to scroll")


def create_browser_tools(browser: BrowserManager) -> list[ToolDefinition]:
    """Browser tools sharing one lazily launched :class:`BrowserManager`."""

    async def _observe(**extra: Any) -> dict[str, Any]:
        jpeg = await browser.screenshot()
        result: dict[str, Any] = dict(extra)
        result["screenshot"] = base64.b64encode(jpeg).decode("ascii")
        result["console_errors"] = browser.console_errors(clear=True)
        return result

    async def open_browser(url: str | None) -> dict[str, Any]:
        current = await browser.open(url)
        return await _observe(url=current)

    async def navigate(url: str) -> dict[str, Any]:
        current = await browser.navigate(url)
        return await _observe(url=current)

    async def screenshot(full_page: bool) -> dict[str, Any]:
        jpeg = await browser.screenshot(full_page=full_page)
        return {
            "screenshot": base64.b64encode(jpeg).decode("ascii"),
            "console_errors": browser.console_errors(clear=True),
        }

    async def click(selector: str) -> dict[str, Any]:
        await browser.click(selector)
        return await _observe(clicked=selector)

    async def type_text(selector: str, text: str) -> dict[str, Any]:
        await browser.type(selector, text)
        return await _observe(typed_into=selector)

    async def scroll(direction: str, amount: int) -> dict[str, Any]:
        await browser.scroll(direction, amount)
        return await _observe(scrolled=direction)

    return [
        ToolDefinition(
            "openBrowser",
            "Open the browser (launching it if needed) and optionally navigate to a URL. "
            "Returns a screenshot and any console errors.",
            open_browser,
            args_model=OpenBrowserArgs,
        ),
        ToolDefinition(
            "navigate",
            "Navigate the open browser to a URL. Returns a screenshot.",
            navigate,
            args_model=NavigateArgs,
        ),
        ToolDefinition(
            "screenshot",
            "Take a screenshot of the current page state.",
            screenshot,
            args_model=ScreenshotArgs,
        ),
        ToolDefinition(
            "click",
            "Click an element on the page. Returns a screenshot after clicking.",
            click,
            args_model=ClickArgs,
        ),
        ToolDefinition(
            "type",
            "Type text into an input field. Returns a screenshot after typing.",
            type_text,
            args_model=TypeArgs,
        ),
        ToolDefinition(
            "scroll",
            "Scroll the page. Returns a screenshot after scrolling.",
            scroll,
            args_model=ScrollArgs,
        ),
    ]
