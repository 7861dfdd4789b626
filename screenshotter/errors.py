from typing import Any, Optional


class ScreenshotError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def details(self) -> dict[str, Any]:
        return {}


class InvalidURL(ScreenshotError):
    status_code = 400


class SchemeNotAllowed(ScreenshotError):
    status_code = 400


class PrivateNetworkBlocked(ScreenshotError):
    status_code = 400


class RateLimited(ScreenshotError):
    status_code = 429

    def __init__(self, retry_after: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after = retry_after

    def details(self) -> dict[str, Any]:
        return {"retryAfter": self.retry_after}


class QueueTimeout(ScreenshotError):
    status_code = 503

    def __init__(self, message: str = "Server busy, try again shortly") -> None:
        super().__init__(message)


class NavigationTimeout(ScreenshotError):
    status_code = 500


class NavigationFailed(ScreenshotError):
    status_code = 500


class OutputTooLarge(ScreenshotError):
    status_code = 413

    def __init__(self, width: int, height: int, size: int, limit: int) -> None:
        super().__init__(f"Screenshot exceeds {limit // (1024 * 1024)}MB size limit")
        self.width = width
        self.height = height
        self.size = size

    def details(self) -> dict[str, Any]:
        return {"dimensions": {"width": self.width, "height": self.height}}


class RendererUnavailable(ScreenshotError):
    status_code = 500


class CaptureFailed(ScreenshotError):
    status_code = 500
