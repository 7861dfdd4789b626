from typing import Literal, Optional

from pydantic import BaseModel


class Dimensions(BaseModel):
    width: int
    height: int


class ErrorResponse(BaseModel):
    error: str
    retryAfter: Optional[int] = None
    dimensions: Optional[Dimensions] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    browser: Literal["alive", "dead"]
    uptime: int
    screenshotCount: int
