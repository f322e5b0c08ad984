"""Fixed-window rate limiting for write-heavy reporting endpoints.

:class:`RateLimiter` makes a synchronous allow/deny decision per key. The
decision is a value, not an exception: callers translate a denial into a
client-visible rejection themselves, or use :func:`rate_limit_middleware`
to do so for an ``aiohttp.web`` application.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from aiohttp import web

from crmsync._cache import BoundedLruCache

_logger = logging.getLogger(__name__)

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class RateLimitBucket:
    key: str
    window_start: float
    count: int
    limit: int
    window_length_ms: int

    def expired(self, now_ms: float) -> bool:
        return now_ms - self.window_start >= self.window_length_ms


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    limit: int
    reset_after_ms: float

    def headers(self) -> dict[str, str]:
        return {LIMIT_HEADER: str(self.limit), REMAINING_HEADER: str(self.remaining)}


class RateLimiter:
    """Process-wide fixed-window limiter with a bounded bucket store.

    Usage::

        limiter = RateLimiter(max_keys=10_000)
        decision = limiter.check(client_ip, limit=10, window_length_ms=60_000)
        if not decision.allowed:
            ...  # respond 429, perform no side effect
    """

    def __init__(self, *, max_keys: int = 10_000, clock: Callable[[], float] = _monotonic_ms) -> None:
        self._buckets: BoundedLruCache[str, RateLimitBucket] = BoundedLruCache(max_keys)
        self._clock = clock

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def bucket(self, key: str) -> RateLimitBucket | None:
        return self._buckets.get(key)

    def check(self, key: str, limit: int, window_length_ms: int) -> RateLimitDecision:
        if limit < 0:
            raise ValueError("limit must not be negative")
        if window_length_ms <= 0:
            raise ValueError("window_length_ms must be positive")

        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None or bucket.expired(now):
            bucket = RateLimitBucket(
                key=key,
                window_start=now,
                count=0,
                limit=limit,
                window_length_ms=window_length_ms,
            )
            evicted = self._buckets.put(key, bucket)
            if evicted is not None:
                _logger.debug("Rate limit bucket evicted key=%s", evicted)
        else:
            bucket.limit = limit
            bucket.window_length_ms = window_length_ms

        bucket.count += 1
        allowed = bucket.count <= limit
        if not allowed:
            _logger.debug("Rate limit exceeded key=%s count=%s limit=%s", key, bucket.count, limit)
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, limit - bucket.count),
            limit=limit,
            reset_after_ms=max(0.0, bucket.window_start + window_length_ms - now),
        )


def client_key(request: web.Request) -> str:
    """First ``X-Forwarded-For`` hop, then the peer address, then ``unknown``."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",", 1)[0].strip()
    if first:
        return first
    return request.remote or "unknown"


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
Middleware = Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]


def rate_limit_middleware(
    limiter: RateLimiter,
    *,
    limit: int,
    window_length_ms: int,
    key_func: Callable[[web.Request], str] = client_key,
) -> Middleware:
    """Build an ``aiohttp.web`` middleware enforcing *limit* per window.

    Denied requests get a 429 JSON response and never reach the handler.
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        decision = limiter.check(key_func(request), limit, window_length_ms)
        if not decision.allowed:
            headers = decision.headers()
            headers["Retry-After"] = str(max(1, int(-(-decision.reset_after_ms // 1000))))
            return web.json_response({"error": "Too many requests"}, status=429, headers=headers)

        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(decision.headers())
            raise
        if not response.prepared:
            response.headers.update(decision.headers())
        return response

    return middleware
