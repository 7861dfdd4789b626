from fastapi import Request
from slowapi.util import get_remote_address

from screenshotter.config import settings
from screenshotter.middleware.rate_limit import RateLimiter
from screenshotter.middleware.security import TargetValidator
from screenshotter.services.browser_manager import BrowserManager
from screenshotter.services.capture_semaphore import CaptureSemaphore
from screenshotter.services.screenshot_service import ScreenshotService

_validator = TargetValidator()
_rate_limiter = RateLimiter(settings.rate_limit)
_semaphore = CaptureSemaphore(settings.capture_max_concurrent)
_browser_manager = BrowserManager()
_screenshot_service = ScreenshotService(_browser_manager, _validator)


def get_validator() -> TargetValidator:
    return _validator


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


def get_semaphore() -> CaptureSemaphore:
    return _semaphore


def get_browser_manager() -> BrowserManager:
    return _browser_manager


def get_screenshot_service() -> ScreenshotService:
    return _screenshot_service


def get_client_id(request: Request) -> str:
    return get_remote_address(request)
