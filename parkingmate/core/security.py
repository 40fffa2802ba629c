"""
Security utilities for API key authentication and rate limiting.

The camera webhook and the admin endpoints are protected by a shared API key;
the public customer endpoints (guest confirmation, registration) are only rate
limited.
"""

import secrets
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from parkingmate.core.config import get_settings
from parkingmate.core.logging import get_logger

logger = get_logger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Annotated[str | None, Depends(api_key_header)],
) -> None:
    """
    Verify API key for camera and admin requests.

    Args:
        api_key: API key from X-API-Key header.

    Raises:
        HTTPException: If API key is missing or invalid.
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
        )

    settings = get_settings()
    if not secrets.compare_digest(api_key, settings.api_key):
        logger.warning("api_key_invalid", reason="key_mismatch")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


@dataclass
class RateLimiter:
    """
    In-memory rate limiter using sliding window algorithm.

    Attributes:
        requests_per_window: Maximum requests allowed per window.
        window_seconds: Size of the sliding window in seconds.
    """

    requests_per_window: int
    window_seconds: int
    _requests: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))

    def _prune(self, key: str, now: float) -> list[float]:
        window_start = now - self.window_seconds
        recent = [t for t in self._requests[key] if t > window_start]
        self._requests[key] = recent
        return recent

    def is_allowed(self, key: str) -> bool:
        """
        Check if a request is allowed for the given key and record it.

        Args:
            key: Unique identifier for the client (usually the IP).

        Returns:
            bool: True if request is allowed, False if rate limit exceeded.
        """
        now = time.time()
        recent = self._prune(key, now)
        if len(recent) < self.requests_per_window:
            recent.append(now)
            return True
        return False

    def get_remaining(self, key: str) -> int:
        """Get remaining requests for the given key in the current window."""
        recent = self._prune(key, time.time())
        return max(0, self.requests_per_window - len(recent))

    def reset(self) -> None:
        self._requests.clear()


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(
            requests_per_window=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return _rate_limiter


async def check_rate_limit(request: Request) -> None:
    """
    Rate limiting dependency for FastAPI routes.

    Args:
        request: The incoming HTTP request.

    Raises:
        HTTPException: If rate limit is exceeded.
    """
    rate_limiter = get_rate_limiter()
    client_ip = request.client.host if request.client else "unknown"

    if not rate_limiter.is_allowed(client_ip):
        logger.warning("rate_limit_exceeded", client_ip=client_ip)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Please try again later.",
            headers={
                "Retry-After": str(rate_limiter.window_seconds),
                "X-RateLimit-Remaining": "0",
            },
        )
