"""
Per-client throttling for the sign-in routes.

Both /login and /google draw from one shared budget per client address, so
switching between them does not reset the window. Counters live in the
storage named by RATE_LIMIT_STORAGE_URI; the in-memory default is per process.
"""

import math

from fastapi import Request
from limits import parse_many
from slowapi import Limiter

from app.config import settings

AUTH_SCOPE = "auth"


def client_ip(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def retry_after_minutes(limit: str) -> int:
    """Longest window of a limit string, in whole minutes."""
    return max(1, math.ceil(max(item.get_expiry() for item in parse_many(limit)) / 60))


limiter = Limiter(
    key_func=client_ip,
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
)

auth_rate_limit = limiter.shared_limit(settings.auth_rate_limit, scope=AUTH_SCOPE)
