"""Core configuration and utilities package."""

from parkingmate.core.config import Settings, get_settings
from parkingmate.core.logging import (
    detection_context,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from parkingmate.core.security import (
    RateLimiter,
    check_rate_limit,
    get_rate_limiter,
    verify_api_key,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Logging
    "detection_context",
    "get_logger",
    "set_correlation_id",
    "setup_logging",
    # Security
    "RateLimiter",
    "check_rate_limit",
    "get_rate_limiter",
    "verify_api_key",
]
