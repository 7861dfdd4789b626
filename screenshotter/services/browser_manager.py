import asyncio
import logging
import time
from typing import Callable, Optional

from patchright.async_api import Browser, Playwright, async_playwright

from screenshotter.config import settings
from screenshotter.errors import RendererUnavailable

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-blink-features=AutomationControlled",
]


class BrowserManager:
    """Owns the single shared browser and replaces it when it goes stale.

    The browser is restarted on the next ``obtain()`` when it is missing or
    disconnected, after ``restart_after_captures`` successful captures, or
    once it is older than ``max_age`` seconds. Concurrent callers that all see
    a stale browser share a single relaunch.

    Every ``obtain()`` is paired with a ``release()``. A replaced browser stays
    open until the captures still running on it have released it, and only
    captures on the current browser count towards its restart threshold.
    """

    def __init__(
        self,
        restart_after_captures: int = settings.browser_restart_after_captures,
        max_age: float = settings.browser_max_age,
        channel: Optional[str] = settings.browser_channel,
        playwright_factory: Callable = async_playwright,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.restart_after_captures = restart_after_captures
        self.max_age = max_age
        self._channel = channel
        self._playwright_factory = playwright_factory
        self._clock = clock
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()
        # captures currently running, per browser
        self._in_use: dict[Browser, int] = {}
        # replaced browsers whose close waits for their last release
        self._retired: set[Browser] = set()
        self.screenshots_since_launch = 0
        self.launched_at: float | None = None
        self.launch_count = 0

    async def start(self) -> None:
        async with self._lock:
            await self._relaunch("startup")

    def restart_reason(self) -> str | None:
        if self._browser is None:
            return "no browser"
        if not self._browser.is_connected():
            return "disconnected"
        if self.screenshots_since_launch >= self.restart_after_captures:
            return f"{self.screenshots_since_launch} captures since launch"
        if self.launched_at is not None and self._clock() - self.launched_at > self.max_age:
            return "max age exceeded"
        return None

    async def obtain(self) -> Browser:
        if self.restart_reason() is not None:
            async with self._lock:
                # Another caller may have relaunched while we waited for the lock
                reason = self.restart_reason()
                if reason is not None:
                    await self._relaunch(reason)

        browser = self._browser
        self._in_use[browser] = self._in_use.get(browser, 0) + 1
        return browser

    async def release(self, browser: Browser, captured: bool = False) -> None:
        """Hand back a browser from ``obtain()``; ``captured`` marks a successful capture."""
        remaining = self._in_use.get(browser, 0) - 1
        if remaining > 0:
            self._in_use[browser] = remaining
        else:
            self._in_use.pop(browser, None)

        if captured and browser is self._browser:
            self.screenshots_since_launch += 1

        if remaining <= 0 and browser in self._retired:
            self._retired.discard(browser)
            logger.info("Closing replaced browser after its last capture")
            await self._close(browser)

    async def _relaunch(self, reason: str) -> None:
        logger.info("Launching browser (%s)...", reason)
        previous, self._browser = self._browser, None
        if previous is not None:
            in_flight = self._in_use.get(previous, 0)
            if in_flight:
                logger.info("Deferring close of previous browser until %d captures finish", in_flight)
                self._retired.add(previous)
            else:
                await self._close(previous)

        try:
            if self._playwright is None:
                self._playwright = await self._playwright_factory().start()
            self._browser = await self._playwright.chromium.launch(
                headless=True,
                channel=self._channel,
                args=BROWSER_ARGS,
            )
        except Exception as e:
            logger.exception("Browser launch failed")
            raise RendererUnavailable(f"Browser unavailable: {e}") from e

        self.screenshots_since_launch = 0
        self.launched_at = self._clock()
        self.launch_count += 1
        logger.info("Browser launched")

    async def _close(self, browser: Browser) -> None:
        try:
            await browser.close()
        except Exception as e:
            logger.debug("Browser did not close cleanly: %s", e)

    def is_alive(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def uptime(self) -> int:
        if self.launched_at is None:
            return 0
        return int(self._clock() - self.launched_at)

    async def stop(self) -> None:
        async with self._lock:
            for browser in [*self._retired, self._browser]:
                if browser is not None:
                    await self._close(browser)
            self._retired.clear()
            self._in_use.clear()
            self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
        logger.info("Browser stopped")
