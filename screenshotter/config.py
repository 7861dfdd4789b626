from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False

    # Rate limiting (per client IP, limits syntax)
    rate_limit: str = "5/minute"

    # Admission control
    capture_max_concurrent: int = 5
    capture_queue_timeout: int = 10000  # milliseconds
    capture_request_timeout: int = 180000  # milliseconds

    # Capture timeouts (milliseconds)
    navigation_timeout: int = 30000
    font_timeout: int = 5000
    selector_timeout: int = 10000
    image_settle_timeout: int = 5000

    # Capture behavior
    scroll_step_delay: int = 300  # milliseconds
    scroll_settle_delay: int = 500  # milliseconds
    max_wait_time: int = 10000  # milliseconds
    max_capture_height: int = 15000  # CSS pixels
    max_output_bytes: int = 50 * 1024 * 1024

    # Browser lifecycle
    browser_restart_after_captures: int = 100
    browser_max_age: int = 3600  # seconds
    browser_channel: Optional[str] = None

    # Request defaults and bounds
    default_viewport_width: int = 1440
    default_viewport_height: int = 900
    max_viewport_width: int = 3840
    max_viewport_height: int = 2160

    # CORS
    allowed_origins: list[str] = ["*"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
