"""Per-user token buckets for mutating ``/api`` requests.

Buckets are keyed by caller and route group (``/api/<group>/...``) so a burst of
client writes does not starve opportunity writes for the same user.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.core.config import get_settings
from crm_api.core.errors import AuthenticationError, error_response
from crm_api.core.security import decode_token

WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class TokenBucketLimiter:
    def __init__(self, window_seconds: int = WINDOW_SECONDS) -> None:
        self.window_seconds = window_seconds
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._lock = threading.Lock()

    def acquire(self, key: tuple[str, str], capacity: int) -> int:
        """Take one token for ``key``; return 0 when allowed, else seconds to wait."""
        if capacity <= 0:
            return self.window_seconds

        rate = capacity / self.window_seconds
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), updated_at=now))
            bucket.tokens = min(float(capacity), bucket.tokens + (now - bucket.updated_at) * rate)
            bucket.updated_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / rate))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


limiter = TokenBucketLimiter()


def _caller(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        return "anonymous"
    try:
        claims = decode_token(header[7:].strip())
    except AuthenticationError:
        return "anonymous"
    return str(claims.get("id", "anonymous"))


def _route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    return parts[1] if len(parts) > 1 else "api"


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    mutating_methods = frozenset({"POST", "PUT", "PATCH", "DELETE"})
    exempt_paths = frozenset({"/api/auth/login"})

    def _applies_to(self, request: Request) -> bool:
        path = request.url.path
        return (
            path.startswith("/api/")
            and path not in self.exempt_paths
            and request.method.upper() in self.mutating_methods
        )

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or not self._applies_to(request):
            return await call_next(request)

        key = (_caller(request), _route_group(request.url.path))
        retry_after = limiter.acquire(key, settings.rate_limit_mutations_per_minute)
        if not retry_after:
            return await call_next(request)

        response = error_response(
            request,
            status_code=429,
            code="rate_limited",
            error="Too Many Requests",
            message="Too many requests",
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    limiter.clear()
