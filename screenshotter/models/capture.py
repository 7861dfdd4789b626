from pydantic import BaseModel, ConfigDict, Field


class ValidatedTarget(BaseModel):
    """A URL whose resolved addresses were all public when it was checked.

    The guarantee is point-in-time only; navigation re-validates every redirect.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    hostname: str


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int
    height: int


class CaptureOptions(BaseModel):
    """Bounded capture settings handed to the orchestrator.

    Built from a ScreenshotRequest, so every value here is already in range.
    """

    model_config = ConfigDict(frozen=True)

    viewport: Viewport
    device_scale_factor: int = Field(default=2, ge=1, le=4)
    full_page: bool = True
    dark_mode: bool = False
    wait_time: int = Field(default=1000, ge=0)
    wait_for_selector: str = ""
    custom_css: str = ""


class CaptureResult(BaseModel):
    image: bytes
    width: int
    height: int
    truncated: bool = False
    selector_timed_out: bool = False
