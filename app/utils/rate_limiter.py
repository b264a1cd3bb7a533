"""
Rate Limiter Configuration

The public widget endpoint is rate limited per client IP. Storage is
in-memory by default; set RATE_LIMIT_STORAGE_URI (e.g. redis://...) when
running several instances.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
import logging

from ..config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind a reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def create_limiter() -> Limiter:
    """Create the limiter with the configured storage backend."""
    storage_uri = settings.rate_limit_storage_uri or "memory://"
    if storage_uri == "memory://":
        logger.info("Using in-memory rate limiter storage")

    return Limiter(
        key_func=get_real_client_ip,
        storage_uri=storage_uri,
        default_limits=["100/minute"],
        enabled=settings.rate_limit_enabled,
    )


# Global rate limiter instance
limiter = create_limiter()


RATE_LIMITS = {
    "widget": settings.widget_rate_limit,
    "booking_status": "60/minute",
    "booking_get": "200/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
