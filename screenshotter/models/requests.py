import math
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from screenshotter.config import settings
from screenshotter.models.capture import CaptureOptions, Viewport

MIN_SCALE_FACTOR = 1
MAX_SCALE_FACTOR = 4
MAX_WAIT_TIME = 10000
MAX_SELECTOR_LENGTH = 500
MAX_CSS_LENGTH = 10000


def _clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


def _truncate(value: Any) -> Any:
    # 1.5 -> 1 rather than a validation error; non-finite values still fail
    if isinstance(value, float) and math.isfinite(value):
        return math.trunc(value)
    return value


class ViewportRequest(BaseModel):
    width: int = settings.default_viewport_width
    height: int = settings.default_viewport_height

    @field_validator("width", "height", mode="before")
    @classmethod
    def truncate_dimensions(cls, v: Any) -> Any:
        return _truncate(v)

    @field_validator("width")
    @classmethod
    def clamp_width(cls, v: int) -> int:
        return _clamp(v, 1, settings.max_viewport_width)

    @field_validator("height")
    @classmethod
    def clamp_height(cls, v: int) -> int:
        return _clamp(v, 1, settings.max_viewport_height)


class ScreenshotRequest(BaseModel):
    url: str = Field(min_length=1)
    viewport: Optional[ViewportRequest] = None
    deviceScaleFactor: int = 2
    fullPage: bool = True
    darkMode: bool = False
    waitTime: int = 1000
    waitForSelector: Optional[str] = Field(default=None, max_length=MAX_SELECTOR_LENGTH)
    customCss: Optional[str] = Field(default=None, max_length=MAX_CSS_LENGTH)

    @field_validator("deviceScaleFactor", "waitTime", mode="before")
    @classmethod
    def truncate_numbers(cls, v: Any) -> Any:
        return _truncate(v)

    @field_validator("deviceScaleFactor")
    @classmethod
    def clamp_scale_factor(cls, v: int) -> int:
        return _clamp(v, MIN_SCALE_FACTOR, MAX_SCALE_FACTOR)

    @field_validator("waitTime")
    @classmethod
    def clamp_wait_time(cls, v: int) -> int:
        return _clamp(v, 0, MAX_WAIT_TIME)

    def to_options(self) -> CaptureOptions:
        viewport = self.viewport or ViewportRequest()
        return CaptureOptions(
            viewport=Viewport(width=viewport.width, height=viewport.height),
            device_scale_factor=self.deviceScaleFactor,
            full_page=self.fullPage,
            dark_mode=self.darkMode,
            wait_time=self.waitTime,
            wait_for_selector=self.waitForSelector or "",
            custom_css=self.customCss or "",
        )
