"""Redis-backed sliding window rate limiter for billing write endpoints.

Protects webhook ingress, invoice finalization and reconciliation runs from
runaway callers. Falls back to an in-process window when Redis is unavailable.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from threading import Lock

from cachetools import TTLCache
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.config import settings

logger = logging.getLogger(__name__)

# Path prefixes and their rate limit configs: (max_requests, window_seconds)
_RATE_LIMIT_PATHS: dict[str, tuple[int, int]] = {
    "/webhooks/": (600, 60),             # provider bursts
    "/invoices/finalize": (120, 60),
    "/reconciliation/runs": (10, 60),
    "/usage-events": (1200, 60),
}
_FALLBACK_CACHE_SIZE = 10_000


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def _match_rule(clean_path: str) -> tuple[str, tuple[int, int]] | None:
    for prefix, config in _RATE_LIMIT_PATHS.items():
        if clean_path == prefix or clean_path.startswith(prefix):
            return prefix, config
    return None


def _get_redis() -> object | None:
    """Lazy-connect to Redis. Returns None if unavailable."""
    try:
        import redis as redis_lib

        return redis_lib.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_timeout=1
        )
    except Exception:
        logger.debug("Rate limiter: Redis unavailable, skipping")
        return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter for billing write endpoints."""

    def __init__(self, app: object) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._redis: object | None = None
        self._redis_checked = False
        self._fallback_cache: TTLCache[str, deque[float]] = TTLCache(
            maxsize=_FALLBACK_CACHE_SIZE,
            ttl=max(window for _, window in _RATE_LIMIT_PATHS.values()),
        )
        self._fallback_lock = Lock()

    def _ensure_redis(self) -> object | None:
        if not self._redis_checked:
            self._redis = _get_redis()
            self._redis_checked = True
        return self._redis

    def _too_many_requests_response(
        self, request: Request, retry_after: int
    ) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests. Please try again later.",
                "details": {"retry_after_seconds": retry_after},
                "request_id": getattr(request.state, "request_id", "unknown"),
            },
            headers={"Retry-After": str(retry_after)},
        )

    def _check_fallback_limit(
        self, key: str, config: tuple[int, int], now: float
    ) -> tuple[bool, int, int]:
        """Fallback in-memory sliding window: (allowed, remaining, reset_or_retry)."""
        max_requests, window_seconds = config

        with self._fallback_lock:
            window = self._fallback_cache.get(key)
            if window is None:
                window = deque()

            cutoff = now - window_seconds
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= max_requests:
                retry_after = max(1, int(window[0] + window_seconds - now))
                self._fallback_cache[key] = window
                return False, 0, retry_after

            window.append(now)
            self._fallback_cache[key] = window
            remaining = max(0, max_requests - len(window))
            reset_at = int(window[0] + window_seconds)
            return True, remaining, reset_at

    async def _dispatch_with_fallback(
        self,
        request: Request,
        call_next: object,
        key: str,
        config: tuple[int, int],
        now: float,
    ) -> Response:
        allowed, remaining, reset_or_retry = self._check_fallback_limit(key, config, now)
        if not allowed:
            logger.warning(
                "Rate limit exceeded (fallback): %s (%d/%d)",
                key,
                config[0],
                config[0],
            )
            return self._too_many_requests_response(request, reset_or_retry)

        response: Response = await call_next(request)  # type: ignore[call-arg]
        response.headers["X-RateLimit-Limit"] = str(config[0])
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_or_retry)
        return response

    async def dispatch(self, request: Request, call_next: object) -> Response:
        # Only rate-limit POST requests to billing write paths
        if request.method != "POST" or not settings.rate_limit_enabled:
            return await call_next(request)  # type: ignore[call-arg]

        path = request.url.path
        # Also check /api/v1 prefixed versions
        clean_path = path.replace("/api/v1", "", 1) if path.startswith("/api/v1") else path

        rule = _match_rule(clean_path)
        if not rule:
            return await call_next(request)  # type: ignore[call-arg]

        prefix, config = rule
        max_requests, window_seconds = config
        client_ip = _get_client_ip(request)
        key = f"rate_limit:{prefix}:{client_ip}"
        now = time.time()
        r = self._ensure_redis()
        if r is None:
            return await self._dispatch_with_fallback(request, call_next, key, config, now)

        try:
            pipe = r.pipeline()  # type: ignore[union-attr]
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            pipe.zcard(key)
            pipe.zadd(key, {str(now): now})
            pipe.expire(key, window_seconds)
            results = pipe.execute()
            current_count = results[1]
        except Exception as exc:
            logger.warning(
                "Rate limiter: Redis error (%s), using fallback",
                exc.__class__.__name__,
            )
            return await self._dispatch_with_fallback(request, call_next, key, config, now)

        if current_count >= max_requests:
            logger.warning(
                "Rate limit exceeded: %s on %s (%d/%d)",
                client_ip,
                prefix,
                current_count,
                max_requests,
            )
            return self._too_many_requests_response(request, window_seconds)

        response: Response = await call_next(request)  # type: ignore[call-arg]

        remaining = max(0, max_requests - current_count - 1)
        response.headers["X-RateLimit-Limit"] = str(max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(now + window_seconds))

        return response
