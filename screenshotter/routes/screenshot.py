import logging
import re
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from screenshotter.config import settings
from screenshotter.deps import (
    get_client_id,
    get_rate_limiter,
    get_screenshot_service,
    get_semaphore,
    get_validator,
)
from screenshotter.errors import CaptureFailed, RateLimited, ScreenshotError
from screenshotter.middleware.rate_limit import RateLimiter
from screenshotter.middleware.security import TargetValidator
from screenshotter.models.requests import ScreenshotRequest
from screenshotter.models.responses import ErrorResponse
from screenshotter.services.capture_semaphore import CaptureSemaphore
from screenshotter.services.screenshot_service import ScreenshotService

logger = logging.getLogger(__name__)
router = APIRouter()


def enforce_rate_limit(
    client_id: str = Depends(get_client_id),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    allowed, retry_after = rate_limiter.admit(client_id)
    if not allowed:
        raise RateLimited(retry_after)


def build_filename(hostname: str, when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    domain = re.sub(r"[^a-zA-Z0-9.-]", "_", hostname)
    timestamp = when.strftime("%Y-%m-%dT%H-%M-%S-") + f"{when.microsecond // 1000:03d}Z"
    return f"screenshot-{domain}-{timestamp}.png"


@router.post(
    "/screenshot",
    dependencies=[Depends(enforce_rate_limit)],
    response_class=Response,
    responses={
        200: {"content": {"image/png": {}}},
        **{code: {"model": ErrorResponse} for code in (400, 413, 429, 500, 503)},
    },
)
async def screenshot(
    body: ScreenshotRequest,
    validator: TargetValidator = Depends(get_validator),
    semaphore: CaptureSemaphore = Depends(get_semaphore),
    service: ScreenshotService = Depends(get_screenshot_service),
):
    # SSRF validation
    target = await validator.validate(body.url)
    options = body.to_options()

    async with semaphore.slot(settings.capture_queue_timeout / 1000):
        start = time.time()
        try:
            result = await service.capture(target, options)
        except ScreenshotError:
            raise
        except Exception as e:
            logger.exception("Screenshot error for %s", target.url)
            raise CaptureFailed(f"Capture failed: {e}") from e
        elapsed = int((time.time() - start) * 1000)

    headers = {
        "Content-Disposition": f'attachment; filename="{build_filename(target.hostname)}"',
        "X-Screenshot-Width": str(result.width),
        "X-Screenshot-Height": str(result.height),
        "X-Capture-Time-Ms": str(elapsed),
    }
    if result.truncated:
        headers["X-Screenshot-Truncated"] = "true"
    if result.selector_timed_out:
        headers["X-Selector-Timeout"] = "true"

    logger.info("Captured %s (%dx%d) in %dms", target.url, result.width, result.height, elapsed)
    return Response(content=result.image, media_type="image/png", headers=headers)
