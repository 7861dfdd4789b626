import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

# Keep tests independent of any local .env before settings are imported
os.environ.setdefault("RATE_LIMIT", "5/minute")
os.environ.setdefault("CAPTURE_MAX_CONCURRENT", "5")

PUBLIC_ADDRESS = "93.184.216.34"


def make_resolver(table: dict[str, set[str]]):
    """Build an async resolver that answers from a fixed table."""
    from screenshotter.errors import InvalidURL

    async def resolve(hostname: str) -> set[str]:
        if hostname not in table:
            raise InvalidURL(f"Could not resolve host '{hostname}'")
        return set(table[hostname])

    return resolve


class FakeBrowser:
    def __init__(self) -> None:
        self.connected = True
        self.close = AsyncMock(side_effect=self._close)

    async def _close(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected


def make_playwright_factory():
    """Return (factory, launched) where launched collects every FakeBrowser."""
    launched: list[FakeBrowser] = []

    async def launch(**kwargs):
        browser = FakeBrowser()
        launched.append(browser)
        return browser

    playwright = SimpleNamespace(
        chromium=SimpleNamespace(launch=AsyncMock(side_effect=launch)),
        stop=AsyncMock(),
    )

    def factory():
        return SimpleNamespace(start=AsyncMock(return_value=playwright))

    factory.playwright = playwright
    return factory, launched


def make_page(page_height: int = 2000, image: bytes = b"\x89PNG fake", url: str = "https://example.com/"):
    from screenshotter.services.screenshot_service import BODY_HEIGHT_JS, PAGE_HEIGHT_JS

    page = MagicMock()
    page.url = url
    page.goto = AsyncMock(return_value=None)
    page.add_init_script = AsyncMock()
    page.route = AsyncMock()
    page.wait_for_function = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.add_style_tag = AsyncMock()
    page.screenshot = AsyncMock(return_value=image)
    page.close = AsyncMock()

    async def evaluate(script, arg=None):
        if script in (PAGE_HEIGHT_JS, BODY_HEIGHT_JS):
            return page_height
        return None

    page.evaluate = AsyncMock(side_effect=evaluate)
    return page


def make_browser_manager(page):
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()

    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)

    manager = MagicMock()
    manager.obtain = AsyncMock(return_value=browser)
    manager.release = AsyncMock()
    manager.browser = browser
    manager.context = context
    return manager


@pytest.fixture
def public_resolver():
    return make_resolver({"example.com": {PUBLIC_ADDRESS}})
