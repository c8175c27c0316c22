from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.rate_limit")

RATE_LIMITED_PATHS = frozenset(
    {
        "/api/auth/login",
        "/api/auth/refresh",
        "/api/auth/activate-account",
        "/api/auth/forgot-password",
        "/api/auth/reset-password",
        "/api/auth/bootstrap-admin",
    }
)


@dataclass
class _BucketState:
    tokens: float
    last_refill: float


class TokenBucketLimiter:
    """Per-key token buckets. Buckets idle for longer than ``idle_ttl_seconds`` are evicted."""

    def __init__(self, idle_ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}
        self._idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._last_sweep = clock()

    def take(self, key: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = self._clock()
        refill_rate = capacity / float(window_seconds)
        bucket_key = (key, route_group)

        with self._lock:
            self._sweep(now)
            current = self._buckets.get(bucket_key)
            if current is None:
                current = _BucketState(tokens=float(capacity), last_refill=now)
                self._buckets[bucket_key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._idle_ttl_seconds:
            return
        cutoff = now - self._idle_ttl_seconds
        for bucket_key in [key for key, state in self._buckets.items() if state.last_refill < cutoff]:
            del self._buckets[bucket_key]
        self._last_sweep = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


class AuthRateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles credential endpoints per client IP.

    The limiter is injected so tests and multiple app instances never share buckets
    by accident; without one the middleware falls back to ``app.state.auth_rate_limiter``.
    """

    def __init__(self, app: ASGIApp, limiter: TokenBucketLimiter | None = None) -> None:
        super().__init__(app)
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        path = request.url.path.rstrip("/")
        if request.method.upper() != "POST" or path not in RATE_LIMITED_PATHS:
            return await call_next(request)

        limiter = self._limiter or getattr(request.app.state, "auth_rate_limiter", None)
        if limiter is None:
            return await call_next(request)

        client_ip = _resolve_client_ip(request)
        allowed, retry_after = limiter.take(
            key=client_ip,
            route_group=path.rsplit("/", 1)[-1],
            capacity=settings.rate_limit_auth_per_minute,
            window_seconds=60,
        )
        if allowed:
            return await call_next(request)

        observe_rate_limited(path)
        logger.warning("http.rate_limited", extra={"path": path, "client_ip": client_ip})
        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or request.headers.get("x-correlation-id")
            or str(uuid.uuid4())
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": None,
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def _resolve_client_ip(request: Request) -> str:
    context = getattr(request.state, "context", None)
    ip_address = getattr(context, "ip_address", None)
    if ip_address:
        return ip_address
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def reset_rate_limiter(app: ASGIApp) -> None:
    limiter = getattr(getattr(app, "state", None), "auth_rate_limiter", None)
    if limiter is not None:
        limiter.clear()
