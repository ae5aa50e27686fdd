"""Playwright browser session shared by the browser tools of one loop run.

The browser is launched lazily on first use and torn down exactly once by
``dispose``. Operations are serialised with an ``asyncio.Lock`` because tool
calls from a single run must never interleave on the same page.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from PIL import Image

from agentloop.errors import BrowserDisposedError

logger = logging.getLogger(__name__)

DEFAULT_SCREENSHOT_MAX_WIDTH = 1024
DEFAULT_SCREENSHOT_QUALITY = 60
_MAX_CONSOLE_ERRORS = 200

PageLauncher = Callable[[bool, int, int], Awaitable[tuple[Any, Any, Any]]]
"""``(headless, width, height) -> (playwright, browser, page)``."""


def compress_screenshot(
    image_bytes: bytes,
    *,
    max_width: int = DEFAULT_SCREENSHOT_MAX_WIDTH,
    quality: int = DEFAULT_SCREENSHOT_QUALITY,
) -> bytes:
    """Downscale to ``max_width`` (keeping aspect ratio) and re-encode as JPEG."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        if img.mode != "RGB":
            img = img.convert("RGB")
        if img.width > max_width:
            ratio = max_width / img.width
            img = img.resize((max_width, max(1, int(img.height * ratio))), Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality, optimize=True)
        return buf.getvalue()


async def _launch_chromium(headless: bool, width: int, height: int) -> tuple[Any, Any, Any]:
    try:
        from playwright.async_api import async_playwright
    except ImportError as exc:
        raise RuntimeError(
            "Playwright is required for browser tools. Install with:\n"
            "  pip install playwright\n"
            "  python -m playwright install chromium"
        ) from exc

    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=headless,
            args=["--disable-extensions", "--no-sandbox"],
        )
        context = await browser.new_context(viewport={"width": width, "height": height})
        page = await context.new_page()
    except Exception:
        await playwright.stop()
        raise
    return playwright, browser, page


class BrowserManager:
    """Lazily launched browser page with one-shot disposal.

    Usage::

        browser = BrowserManager(headless=True)
        await browser.open("http://localhost:3000")
        jpeg = await browser.screenshot()
        await browser.dispose()
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        width: int = 1280,
        height: int = 800,
        launcher: PageLauncher | None = None,
        screenshot_max_width: int = DEFAULT_SCREENSHOT_MAX_WIDTH,
        screenshot_quality: int = DEFAULT_SCREENSHOT_QUALITY,
    ) -> None:
        self.headless = headless
        self.width = width
        self.height = height
        self.screenshot_max_width = screenshot_max_width
        self.screenshot_quality = screenshot_quality
        self._launcher = launcher or _launch_chromium
        self._playwright: Any = None
        self._browser: Any = None
        self._page: Any = None
        self._console_errors: list[str] = []
        self._disposed = False
        self._lock: asyncio.Lock | None = None

    @property
    def is_open(self) -> bool:
        return self._page is not None and not self._disposed

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _get_lock(self) -> asyncio.Lock:
        # Created lazily so the lock binds to the loop that actually runs the tools.
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _check_usable(self) -> None:
        if self._disposed:
            raise BrowserDisposedError("Browser session has been disposed")

    async def _ensure_page(self) -> Any:
        self._check_usable()
        if self._page is None:
            self._playwright, self._browser, self._page = await self._launcher(
                self.headless, self.width, self.height
            )
            self._attach_console_listener(self._page)
            logger.info("Browser started: %dx%d headless=%s", self.width, self.height, self.headless)
        return self._page

    def _attach_console_listener(self, page: Any) -> None:
        on = getattr(page, "on", None)
        if on is None:
            return

        def _on_console(message: Any) -> None:
            if getattr(message, "type", None) == "error":
                self._record_console_error(str(getattr(message, "text", message)))

        def _on_page_error(error: Any) -> None:
            self._record_console_error(f"pageerror: {error}")

        on("console", _on_console)
        on("pageerror", _on_page_error)

    def _record_console_error(self, text: str) -> None:
        self._console_errors.append(text)
        if len(self._console_errors) > _MAX_CONSOLE_ERRORS:
            del self._console_errors[: len(self._console_errors) - _MAX_CONSOLE_ERRORS]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def open(self, url: str | None = None, *, timeout_ms: int = 30_000) -> str:
        """Launch the browser if needed and optionally navigate. Returns the page URL."""
        async with self._get_lock():
            page = await self._ensure_page()
            if url:
                await self._goto(page, url, timeout_ms)
            return str(getattr(page, "url", "") or "")

    async def navigate(self, url: str, *, timeout_ms: int = 30_000) -> str:
        async with self._get_lock():
            page = await self._ensure_page()
            await self._goto(page, url, timeout_ms)
            return str(getattr(page, "url", "") or url)

    @staticmethod
    async def _goto(page: Any, url: str, timeout_ms: int) -> None:
        logger.info("Navigating to %s", url)
        await page.goto(url, timeout=timeout_ms)
        await page.wait_for_load_state("domcontentloaded")

    async def screenshot(self, *, full_page: bool = False) -> bytes:
        """Capture the page and return it as a compressed JPEG."""
        async with self._get_lock():
            page = await self._ensure_page()
            raw = await page.screenshot(type="png", full_page=full_page)
        return compress_screenshot(
            raw,
            max_width=self.screenshot_max_width,
            quality=self.screenshot_quality,
        )

    async def click(self, selector: str, *, timeout_ms: int = 10_000) -> None:
        async with self._get_lock():
            page = await self._ensure_page()
            await page.click(selector, timeout=timeout_ms)
            logger.debug("click %s", selector)

    async def type(self, selector: str, text: str, *, timeout_ms: int = 10_000) -> None:
        async with self._get_lock():
            page = await self._ensure_page()
            await page.fill(selector, text, timeout=timeout_ms)
            logger.debug("type into %s (%d chars)", selector, len(text))

    async def scroll(self, direction: str = "down", amount: int = 500) -> None:
        deltas = {
            "down": (0, amount),
            "up": (0, -amount),
            "right": (amount, 0),
            "left": (-amount, 0),
        }
        key = (direction or "").strip().lower()
        if key not in deltas:
            raise ValueError(f"Unknown scroll direction: {direction!r}")
        dx, dy = deltas[key]
        async with self._get_lock():
            page = await self._ensure_page()
            await page.mouse.wheel(dx, dy)
            logger.debug("scroll %s by %d", key, amount)

    def console_errors(self, *, clear: bool = False) -> list[str]:
        errors = list(self._console_errors)
        if clear:
            self._console_errors.clear()
        return errors

    async def dispose(self) -> None:
        """Close the browser. Only the first call does anything."""
        if self._disposed:
            return
        self._disposed = True
        page, browser, playwright = self._page, self._browser, self._playwright
        self._page = self._browser = self._playwright = None

        if page is not None and browser is None:
            # Launchers that hand back a bare page own nothing else to close.
            try:
                await page.close()
            except Exception as exc:
                logger.warning("Closing browser page failed: %s", exc)
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                logger.warning("Closing browser failed: %s", exc)
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:
                logger.warning("Stopping Playwright failed: %s", exc)
        if page is not None:
            logger.info("Browser stopped")
