"""Per-caller request budget for the API surface.

Every caller (the access-token subject, or the client address for anonymous calls) owns a
token bucket holding ``rate_limit_requests`` tokens that refills evenly over
``rate_limit_window_seconds``.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salesforce_pro.core.config import get_settings
from salesforce_pro.core.errors import error_response
from salesforce_pro.core.security import TokenError, decode_access_token

logger = logging.getLogger("salesforce_pro.rate_limit")

BEARER_PREFIX = "bearer "
SWEEP_EVERY = 1000


@dataclass
class Bucket:
    tokens: float
    updated_at: float

    def refill(self, now: float, capacity: int, per_second: float) -> None:
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(float(capacity), self.tokens + elapsed * per_second)
        self.updated_at = now


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, Bucket] = {}
        self._calls = 0

    def __len__(self) -> int:
        return len(self._buckets)

    def acquire(self, key: str, capacity: int, window_seconds: int) -> int:
        """Consumes one token for ``key``.

        Returns 0 when the call is allowed, otherwise the number of seconds until the
        bucket holds a whole token again.
        """
        window = max(1, window_seconds)
        if capacity <= 0:
            return window
        per_second = capacity / float(window)
        now = self._clock()

        with self._lock:
            self._calls += 1
            if self._calls % SWEEP_EVERY == 0:
                self._sweep(now, capacity, per_second)

            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = Bucket(tokens=float(capacity), updated_at=now)
            bucket.refill(now, capacity, per_second)
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0
            return max(1, math.ceil((1.0 - bucket.tokens) / per_second))

    def _sweep(self, now: float, capacity: int, per_second: float) -> None:
        # a bucket that has refilled completely behaves exactly like a missing one
        idle = [
            key
            for key, bucket in self._buckets.items()
            if bucket.tokens + (now - bucket.updated_at) * per_second >= capacity
        ]
        for key in idle:
            del self._buckets[key]

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._calls = 0


_limiter = RateLimiter()


def client_key(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if header.lower().startswith(BEARER_PREFIX):
        try:
            claims = decode_access_token(header[len(BEARER_PREFIX) :].strip())
        except TokenError:
            claims = None
        if claims:
            return f"user:{claims['sub']}"
    host = request.client.host if request.client is not None else "unknown"
    return f"ip:{host}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or not request.url.path.startswith(settings.api_prefix):
            return await call_next(request)

        retry_after = _limiter.acquire(
            client_key(request),
            settings.rate_limit_requests,
            settings.rate_limit_window_seconds,
        )
        if not retry_after:
            return await call_next(request)

        logger.warning("http.rate_limited", extra={"method": request.method, "path": request.url.path})
        return error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Too many requests",
            headers={"Retry-After": str(retry_after)},
        )


def reset_rate_limiter() -> None:
    _limiter.clear()
