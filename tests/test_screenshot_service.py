"""
Tests for the capture orchestration flow.

The browser, context and page are mocks; no real browser is launched.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from patchright.async_api import Error as PlaywrightError
from patchright.async_api import TimeoutError as PlaywrightTimeout

from conftest import PUBLIC_ADDRESS, make_browser_manager, make_page, make_resolver
from screenshotter.config import settings
from screenshotter.errors import CaptureFailed, NavigationFailed, NavigationTimeout, OutputTooLarge
from screenshotter.middleware.security import TargetValidator
from screenshotter.models.capture import CaptureOptions, ValidatedTarget, Viewport
from screenshotter.services.screenshot_service import (
    FREEZE_ANIMATIONS_CSS,
    HIDE_WEBDRIVER_JS,
    WAIT_FOR_IMAGES_JS,
    NavigationGuard,
    ScreenshotService,
)

TARGET = ValidatedTarget(url="https://example.com/", hostname="example.com")


@pytest.fixture
def validator():
    return TargetValidator(
        resolver=make_resolver(
            {
                "example.com": {PUBLIC_ADDRESS},
                "www.example.com": {PUBLIC_ADDRESS},
                "internal.test": {"10.0.0.8"},
            }
        )
    )


def make_options(**overrides) -> CaptureOptions:
    values = {
        "viewport": Viewport(width=1440, height=900),
        "device_scale_factor": 2,
        "full_page": True,
        "wait_time": 0,
    }
    values.update(overrides)
    return CaptureOptions(**values)


def make_service(page, validator):
    manager = make_browser_manager(page)
    return ScreenshotService(manager, validator), manager


class TestScreenshotService:
    @pytest.mark.asyncio
    async def test_short_full_page_capture(self, validator):
        page = make_page(page_height=2000)
        service, manager = make_service(page, validator)

        result = await service.capture(TARGET, make_options())

        assert result.image == b"\x89PNG fake"
        assert result.width == 1440 * 2
        assert result.height == 2000 * 2
        assert result.truncated is False
        assert result.selector_timed_out is False
        page.screenshot.assert_awaited_once_with(type="png", full_page=True)
        manager.release.assert_awaited_once_with(manager.browser, captured=True)

    @pytest.mark.asyncio
    async def test_context_settings(self, validator):
        page = make_page()
        service, manager = make_service(page, validator)

        await service.capture(TARGET, make_options(dark_mode=True, device_scale_factor=3))

        kwargs = manager.browser.new_context.call_args.kwargs
        assert kwargs["viewport"] == {"width": 1440, "height": 900}
        assert kwargs["device_scale_factor"] == 3
        assert kwargs["color_scheme"] == "dark"
        assert "Chrome/" in kwargs["user_agent"]
        page.add_init_script.assert_awaited_once_with(HIDE_WEBDRIVER_JS)
        page.route.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_navigation_waits_for_network_idle(self, validator):
        page = make_page()
        service, _ = make_service(page, validator)

        await service.capture(TARGET, make_options())

        page.goto.assert_awaited_once_with(
            TARGET.url, wait_until="networkidle", timeout=settings.navigation_timeout
        )

    @pytest.mark.asyncio
    async def test_tall_page_is_truncated(self, validator):
        page = make_page(page_height=20000)
        service, _ = make_service(page, validator)

        result = await service.capture(TARGET, make_options(device_scale_factor=2))

        assert result.truncated is True
        assert result.height == 15000 * 2
        styles = [c.kwargs["content"] for c in page.add_style_tag.await_args_list]
        assert FREEZE_ANIMATIONS_CSS in styles
        assert any("max-height: 15000px" in css for css in styles)

    @pytest.mark.asyncio
    async def test_viewport_only_capture(self, validator):
        page = make_page(page_height=20000)
        service, _ = make_service(page, validator)

        result = await service.capture(TARGET, make_options(full_page=False, device_scale_factor=1))

        assert result.truncated is False
        assert (result.width, result.height) == (1440, 900)
        page.screenshot.assert_awaited_once_with(type="png", full_page=False)
        page.add_style_tag.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lazy_load_scroll_only_for_full_page(self, validator):
        page = make_page(page_height=2700)
        service, _ = make_service(page, validator)

        await service.capture(TARGET, make_options(full_page=True))

        scroll_targets = [c.args[1] for c in page.evaluate.await_args_list if len(c.args) > 1]
        assert scroll_targets[:3] == [900, 1800, 2700]
        assert 0 in scroll_targets[3:]

    @pytest.mark.asyncio
    async def test_custom_css_and_wait_time(self, validator):
        page = make_page()
        service, _ = make_service(page, validator)

        await service.capture(TARGET, make_options(custom_css="body { color: red; }", wait_time=2500, full_page=False))

        page.add_style_tag.assert_awaited_once_with(content="body { color: red; }")
        page.wait_for_timeout.assert_any_await(2500)

    @pytest.mark.asyncio
    async def test_selector_timeout_is_advisory(self, validator):
        page = make_page()
        page.wait_for_selector = AsyncMock(side_effect=PlaywrightTimeout("Timeout 10000ms exceeded"))
        service, _ = make_service(page, validator)

        result = await service.capture(TARGET, make_options(wait_for_selector="#missing"))

        assert result.selector_timed_out is True
        page.wait_for_selector.assert_awaited_once_with("#missing", timeout=settings.selector_timeout)

    @pytest.mark.asyncio
    async def test_font_timeout_is_absorbed(self, validator):
        page = make_page()
        page.wait_for_function = AsyncMock(side_effect=PlaywrightTimeout("fonts"))
        service, _ = make_service(page, validator)

        result = await service.capture(TARGET, make_options())

        assert result.image

    @pytest.mark.asyncio
    async def test_image_settle_failure_is_absorbed(self, validator):
        page = make_page(page_height=2000)
        measure = page.evaluate.side_effect

        async def evaluate(script, arg=None):
            if script == WAIT_FOR_IMAGES_JS:
                raise PlaywrightError("Execution context was destroyed")
            return await measure(script, arg)

        page.evaluate = AsyncMock(side_effect=evaluate)
        service, manager = make_service(page, validator)

        result = await service.capture(TARGET, make_options())

        assert result.image == b"\x89PNG fake"
        assert result.height == 2000 * 2
        page.evaluate.assert_any_await(WAIT_FOR_IMAGES_JS, settings.image_settle_timeout)
        manager.release.assert_awaited_once_with(manager.browser, captured=True)

    @pytest.mark.asyncio
    async def test_output_too_large(self, validator, monkeypatch):
        monkeypatch.setattr(settings, "max_output_bytes", 10)
        page = make_page(page_height=2000, image=b"x" * 11)
        service, manager = make_service(page, validator)

        with pytest.raises(OutputTooLarge) as excinfo:
            await service.capture(TARGET, make_options(device_scale_factor=2))

        assert excinfo.value.details() == {"dimensions": {"width": 2880, "height": 4000}}
        manager.release.assert_awaited_once_with(manager.browser, captured=False)
        page.close.assert_awaited_once()
        manager.context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_navigation_timeout_still_tears_down(self, validator):
        page = make_page()
        page.goto = AsyncMock(side_effect=PlaywrightTimeout("Timeout 30000ms exceeded"))
        service, manager = make_service(page, validator)

        with pytest.raises(NavigationTimeout):
            await service.capture(TARGET, make_options())

        page.close.assert_awaited_once()
        manager.context.close.assert_awaited_once()
        manager.release.assert_awaited_once_with(manager.browser, captured=False)

    @pytest.mark.asyncio
    async def test_navigation_error(self, validator):
        page = make_page()
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        service, _ = make_service(page, validator)

        with pytest.raises(NavigationFailed):
            await service.capture(TARGET, make_options())

    @pytest.mark.asyncio
    async def test_screenshot_error_becomes_capture_failed(self, validator):
        page = make_page()
        page.screenshot = AsyncMock(side_effect=PlaywrightError("Target closed"))
        service, manager = make_service(page, validator)

        with pytest.raises(CaptureFailed):
            await service.capture(TARGET, make_options())

        manager.context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_teardown_errors_are_ignored(self, validator):
        page = make_page()
        page.close = AsyncMock(side_effect=PlaywrightError("already closed"))
        service, manager = make_service(page, validator)

        result = await service.capture(TARGET, make_options())

        assert result.image
        manager.context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redirect_to_private_host_fails_navigation(self, validator):
        page = make_page(url="http://internal.test/")
        service, manager = make_service(page, validator)

        with pytest.raises(NavigationFailed):
            await service.capture(TARGET, make_options())

        page.screenshot.assert_not_awaited()
        manager.context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_overall_timeout(self, validator, monkeypatch):
        monkeypatch.setattr(settings, "capture_request_timeout", 10)
        page = make_page()

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        page.goto = AsyncMock(side_effect=hang)
        service, manager = make_service(page, validator)

        with pytest.raises(NavigationTimeout):
            await service.capture(TARGET, make_options())

        manager.context.close.assert_awaited_once()
        manager.release.assert_awaited_once_with(manager.browser, captured=False)


def make_route(url: str, is_navigation: bool = True, redirected_from=None):
    request = MagicMock()
    request.url = url
    request.is_navigation_request = MagicMock(return_value=is_navigation)
    request.redirected_from = redirected_from
    route = MagicMock()
    route.request = request
    route.abort = AsyncMock()
    route.continue_ = AsyncMock()
    return route


class TestNavigationGuard:
    def test_needs_check(self, validator):
        guard = NavigationGuard(validator, TARGET.url)

        assert guard.needs_check(TARGET.url, True, False) is False
        assert guard.needs_check(TARGET.url, True, True) is True
        assert guard.needs_check("https://www.example.com/", True, False) is True
        assert guard.needs_check("http://10.0.0.1/img.png", False, False) is False

    @pytest.mark.asyncio
    async def test_blocked_redirect_is_aborted(self, validator):
        guard = NavigationGuard(validator, TARGET.url)
        route = make_route("http://169.254.169.254/latest/", redirected_from=MagicMock())

        await guard.handle_route(route)

        route.abort.assert_awaited_once_with("blockedbyclient")
        route.continue_.assert_not_awaited()
        assert guard.blocked == ["http://169.254.169.254/latest/"]

    @pytest.mark.asyncio
    async def test_allowed_redirect_continues(self, validator):
        guard = NavigationGuard(validator, TARGET.url)
        route = make_route("https://www.example.com/", redirected_from=MagicMock())

        await guard.handle_route(route)

        route.continue_.assert_awaited_once()
        route.abort.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_subresources_pass_through(self, validator):
        guard = NavigationGuard(validator, TARGET.url)
        route = make_route("https://cdn.example.net/app.js", is_navigation=False)

        await guard.handle_route(route)

        route.continue_.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_verify_chain_checks_every_hop(self, validator):
        guard = NavigationGuard(validator, TARGET.url)
        first = SimpleNamespace(url=TARGET.url, redirected_from=None)
        hop = SimpleNamespace(url="http://internal.test/", redirected_from=first)
        final = SimpleNamespace(url="https://www.example.com/", redirected_from=hop)
        response = SimpleNamespace(request=final)

        with pytest.raises(NavigationFailed):
            await guard.verify_chain(response, "https://www.example.com/")

        assert "http://internal.test/" in guard.blocked

    @pytest.mark.asyncio
    async def test_verify_chain_without_redirects(self, validator):
        guard = NavigationGuard(validator, TARGET.url)
        response = SimpleNamespace(request=SimpleNamespace(url=TARGET.url, redirected_from=None))

        await guard.verify_chain(response, TARGET.url)

        assert guard.blocked == []
