"""
Rate Limiter Configuration

Limits are counted per caller: the gateway's X-User-Id when present,
otherwise the client IP. In-memory storage by default; point
RATE_LIMIT_STORAGE_URI at Redis when several instances share the limits.
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from ..config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client IP behind a reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def rate_limit_key(request: Request) -> str:
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_client_ip(request)}"


def create_limiter() -> Limiter:
    logger.info(f"Rate limiter storage: {settings.rate_limit_storage_uri.split('://', 1)[0]}")
    return Limiter(
        key_func=rate_limit_key,
        storage_uri=settings.rate_limit_storage_uri,
        default_limits=["100/minute"],
        enabled=settings.rate_limit_enabled,
    )


limiter = create_limiter()

# Per-operation limits; anything unlisted gets the default
RATE_LIMITS = {
    "reservation_create": "30/minute",
    "reservation_update": "60/minute",
    "occupancy": "120/minute",
    "reservation_get": "200/minute",
    # Gateway callbacks arrive from one IP for many members
    "payment_callback": "300/minute",
    "admin": "30/minute",
}


def get_rate_limit(operation: str) -> str:
    return RATE_LIMITS.get(operation, "100/minute")
