import asyncio
import logging
import math
import time

from patchright.async_api import BrowserContext, Page, Response, Route
from patchright.async_api import Error as PlaywrightError
from patchright.async_api import TimeoutError as PlaywrightTimeout

from screenshotter.config import settings
from screenshotter.errors import CaptureFailed, NavigationFailed, NavigationTimeout, OutputTooLarge, ScreenshotError
from screenshotter.middleware.security import TargetValidator
from screenshotter.models.capture import CaptureOptions, CaptureResult, ValidatedTarget
from screenshotter.services.browser_manager import BrowserManager

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

HIDE_WEBDRIVER_JS = """Object.defineProperty(navigator, 'webdriver', { get: () => false });"""

FONTS_READY_JS = """() => document.fonts.ready.then(() => true)"""

BODY_HEIGHT_JS = """() => document.body ? document.body.scrollHeight : 0"""

PAGE_HEIGHT_JS = """() => Math.max(
    document.body ? document.body.scrollHeight : 0,
    document.documentElement.scrollHeight
)"""

SCROLL_TO_JS = """(y) => window.scrollTo(0, y)"""

WAIT_FOR_IMAGES_JS = """(timeout) => {
    const pending = Array.from(document.images).filter((img) => !img.complete);
    if (pending.length === 0) return;
    return Promise.race([
        Promise.all(pending.map((img) => new Promise((resolve) => {
            img.addEventListener('load', resolve);
            img.addEventListener('error', resolve);
        }))),
        new Promise((resolve) => setTimeout(resolve, timeout)),
    ]);
}"""

# fixed/sticky elements would repeat at every viewport boundary of a tall capture
UNSTICK_JS = """() => {
    for (const el of document.querySelectorAll('*')) {
        const position = getComputedStyle(el).position;
        if (position === 'fixed') {
            el.style.setProperty('position', 'absolute', 'important');
        } else if (position === 'sticky') {
            el.style.setProperty('position', 'relative', 'important');
        }
    }
}"""

FREEZE_ANIMATIONS_CSS = """
*, *::before, *::after {
    animation-duration: 0s !important;
    animation-delay: 0s !important;
    animation-iteration-count: 1 !important;
    transition-duration: 0s !important;
    transition-delay: 0s !important;
    scroll-behavior: auto !important;
}
"""

CLAMP_HEIGHT_CSS = """html, body {{ max-height: {height}px !important; overflow: hidden !important; }}"""


class NavigationGuard:
    """Re-validates every navigation the page makes after the initial one.

    Redirect hops, client-side navigations and frame loads all pass through
    ``allows()`` before the browser is permitted to fetch them.
    """

    def __init__(self, validator: TargetValidator, initial_url: str) -> None:
        self._validator = validator
        self._initial_url = initial_url
        self._decisions: dict[str, bool] = {}
        self.blocked: list[str] = []

    async def allows(self, url: str) -> bool:
        if url not in self._decisions:
            self._decisions[url] = await self._validator.is_redirect_allowed(url)
        if not self._decisions[url]:
            self.blocked.append(url)
        return self._decisions[url]

    def needs_check(self, url: str, is_navigation: bool, is_redirect: bool) -> bool:
        if not is_navigation:
            return False
        return is_redirect or url != self._initial_url

    async def handle_route(self, route: Route) -> None:
        request = route.request
        if self.needs_check(request.url, request.is_navigation_request(), request.redirected_from is not None):
            if not await self.allows(request.url):
                logger.warning("Aborting navigation to %s", request.url)
                await route.abort("blockedbyclient")
                return
        await route.continue_()

    async def verify_chain(self, response: Response | None, final_url: str) -> None:
        """Check the redirect history and landing URL once navigation settles."""
        hops = []
        request = response.request if response is not None else None
        while request is not None and request.redirected_from is not None:
            hops.append(request.url)
            request = request.redirected_from
        if final_url and final_url != self._initial_url:
            hops.append(final_url)

        for url in hops:
            if not await self.allows(url):
                raise NavigationFailed(f"Navigation blocked: redirect to disallowed address ({url})")


class ScreenshotService:
    """Drives one browser context through navigation, settling and capture."""

    def __init__(self, browser_manager: BrowserManager, validator: TargetValidator) -> None:
        self._browser_manager = browser_manager
        self._validator = validator

    async def capture(self, target: ValidatedTarget, options: CaptureOptions) -> CaptureResult:
        overall_timeout = settings.capture_request_timeout / 1000
        start = time.time()
        try:
            result = await asyncio.wait_for(self._do_capture(target, options), timeout=overall_timeout)
        except asyncio.TimeoutError:
            logger.error("Screenshot operation timed out after %ds", overall_timeout)
            raise NavigationTimeout(f"Screenshot operation timed out after {overall_timeout:.0f}s") from None
        except ScreenshotError:
            raise
        except PlaywrightError as e:
            logger.warning("Capture of %s failed: %s", target.url, e)
            raise CaptureFailed(f"Capture failed: {e}") from e

        elapsed = int((time.time() - start) * 1000)
        logger.info("Total screenshot time: %dms (%d bytes)", elapsed, len(result.image))
        return result

    async def _do_capture(self, target: ValidatedTarget, options: CaptureOptions) -> CaptureResult:
        browser = await self._browser_manager.obtain()
        viewport = options.viewport
        scale = options.device_scale_factor

        context: BrowserContext | None = None
        page: Page | None = None
        captured = False
        try:
            context = await browser.new_context(
                viewport={"width": viewport.width, "height": viewport.height},
                device_scale_factor=scale,
                color_scheme="dark" if options.dark_mode else "light",
                user_agent=USER_AGENT,
            )
            page = await context.new_page()
            await page.add_init_script(HIDE_WEBDRIVER_JS)

            guard = NavigationGuard(self._validator, target.url)
            await page.route("**/*", guard.handle_route)
            await self._navigate(page, target, guard)

            await self._settle_fonts(page)
            selector_timed_out = await self._wait_for_selector(page, options.wait_for_selector)

            if options.full_page:
                await self._scroll_for_lazy_content(page, viewport.height)

            if options.custom_css:
                await page.add_style_tag(content=options.custom_css)

            wait = min(options.wait_time, settings.max_wait_time)
            if wait > 0:
                logger.info("Waiting %dms for dynamic content...", wait)
                await page.wait_for_timeout(wait)

            await self._settle_images(page)

            page_height = await page.evaluate(PAGE_HEIGHT_JS)
            truncated = False
            capture_height = max(page_height, viewport.height) if options.full_page else viewport.height
            if options.full_page and capture_height > settings.max_capture_height:
                truncated = True
                capture_height = settings.max_capture_height
                logger.info("Page height %dpx exceeds %dpx, truncating", page_height, capture_height)

            if options.full_page and capture_height > viewport.height:
                capture_height, truncated = await self._stabilize_layout(page, truncated)
                image = await page.screenshot(type="png", full_page=True)
            else:
                image = await page.screenshot(type="png", full_page=options.full_page)

            width = viewport.width * scale
            height = capture_height * scale
            if len(image) > settings.max_output_bytes:
                logger.warning("Screenshot of %s is %d bytes (%dx%d), over limit", target.url, len(image), width, height)
                raise OutputTooLarge(width, height, len(image), settings.max_output_bytes)

            result = CaptureResult(
                image=image,
                width=width,
                height=height,
                truncated=truncated,
                selector_timed_out=selector_timed_out,
            )
            captured = True
            return result
        finally:
            await self._teardown(page, context)
            await self._browser_manager.release(browser, captured=captured)

    async def _navigate(self, page: Page, target: ValidatedTarget, guard: NavigationGuard) -> None:
        nav_timeout = settings.navigation_timeout
        logger.info("Navigating to %s (timeout: %dms)...", target.url, nav_timeout)
        try:
            response = await page.goto(target.url, wait_until="networkidle", timeout=nav_timeout)
        except PlaywrightTimeout:
            raise NavigationTimeout(f"Navigation timed out after {nav_timeout}ms") from None
        except PlaywrightError as e:
            if guard.blocked:
                raise NavigationFailed(
                    f"Navigation blocked: redirect to disallowed address ({guard.blocked[0]})"
                ) from e
            raise NavigationFailed(f"Navigation failed: {e}") from e

        await guard.verify_chain(response, page.url)

    async def _settle_fonts(self, page: Page) -> None:
        try:
            await page.wait_for_function(FONTS_READY_JS, timeout=settings.font_timeout)
        except PlaywrightError as e:
            logger.info("Fonts not ready, continuing: %s", e)

    async def _wait_for_selector(self, page: Page, selector: str) -> bool:
        """Wait for the requested selector; returns True when the wait gave up."""
        if not selector:
            return False
        try:
            await page.wait_for_selector(selector, timeout=settings.selector_timeout)
        except PlaywrightError:
            logger.info("Selector '%s' not found within %dms, continuing", selector, settings.selector_timeout)
            return True
        return False

    async def _scroll_for_lazy_content(self, page: Page, viewport_height: int) -> None:
        scroll_height = await page.evaluate(BODY_HEIGHT_JS)
        reach = min(scroll_height, settings.max_capture_height)
        steps = math.ceil(reach / viewport_height)
        logger.info("Scrolling page (%d steps)...", steps)
        for i in range(1, steps + 1):
            await page.evaluate(SCROLL_TO_JS, i * viewport_height)
            await page.wait_for_timeout(settings.scroll_step_delay)
        await page.evaluate(SCROLL_TO_JS, 0)
        await page.wait_for_timeout(settings.scroll_settle_delay)

    async def _settle_images(self, page: Page) -> None:
        try:
            await page.evaluate(WAIT_FOR_IMAGES_JS, settings.image_settle_timeout)
        except PlaywrightError as e:
            logger.info("Image settle failed, continuing: %s", e)

    async def _stabilize_layout(self, page: Page, truncated: bool) -> tuple[int, bool]:
        await page.evaluate(UNSTICK_JS)
        await page.add_style_tag(content=FREEZE_ANIMATIONS_CSS)
        await page.wait_for_timeout(200)

        # Unsticking and freezing animations can change the layout
        final_height = await page.evaluate(PAGE_HEIGHT_JS)
        if final_height > settings.max_capture_height:
            truncated = True
        capture_height = min(final_height, settings.max_capture_height) if truncated else final_height

        if truncated:
            await page.add_style_tag(content=CLAMP_HEIGHT_CSS.format(height=capture_height))
            await page.wait_for_timeout(100)

        await page.evaluate(SCROLL_TO_JS, 0)
        await page.wait_for_timeout(200)
        return capture_height, truncated

    async def _teardown(self, page: Page | None, context: BrowserContext | None) -> None:
        if page is not None:
            try:
                await page.close()
            except Exception as e:
                logger.debug("Page already closed: %s", e)
        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.debug("Context already closed: %s", e)
