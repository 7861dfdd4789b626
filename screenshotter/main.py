import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from screenshotter.config import settings
from screenshotter.deps import get_browser_manager
from screenshotter.errors import RateLimited, ScreenshotError
from screenshotter.models.responses import HealthResponse
from screenshotter.routes.screenshot import router as screenshot_router
from screenshotter.services.browser_manager import BrowserManager

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    browser_manager = get_browser_manager()
    logger.info("Starting browser...")
    await browser_manager.start()
    yield
    logger.info("Shutting down browser...")
    await browser_manager.stop()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ScreenshotError)
async def screenshot_error_handler(request: Request, exc: ScreenshotError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, **exc.details()},
        headers=headers,
    )


def _first_error_message(errors: list) -> str:
    if not errors:
        return "Validation error"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if first.get("type") == "missing" and field:
        return f"{field} is required"
    message = first.get("msg", "Validation error")
    return f"{field}: {message}" if field else message


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _first_error_message(exc.errors())})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": _first_error_message(exc.errors())})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    expose_headers=[
        "Content-Disposition",
        "X-Screenshot-Width",
        "X-Screenshot-Height",
        "X-Capture-Time-Ms",
        "X-Screenshot-Truncated",
        "X-Selector-Timeout",
    ],
    max_age=86400,
)

# Routes
app.include_router(screenshot_router, prefix="/api")


@app.get("/health", response_model=HealthResponse)
async def health(browser_manager: BrowserManager = Depends(get_browser_manager)):
    return HealthResponse(
        browser="alive" if browser_manager.is_alive() else "dead",
        uptime=int(time.time() - START_TIME),
        screenshotCount=browser_manager.screenshots_since_launch,
    )


def run() -> None:
    uvicorn.run("screenshotter.main:app", host=settings.host, port=settings.port)
