"""
Rate Limiting Middleware
========================

Redis-based rate limiting for API endpoints: a sliding window per client,
50 requests per 15 minutes in production and 500 otherwise by default.
When Redis is unreachable requests are let through, and reconnection is only
attempted again after ``redis_retry_seconds``.

The client is the TCP peer. X-Forwarded-For is only read when the peer is a
configured trusted proxy, and then the right-most hop that is not itself a
trusted proxy wins; hops further left are client-supplied.
"""

import ipaddress
import time
import logging
from typing import Callable, List, Optional, Sequence, Tuple, Union

import redis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

EXEMPT_PATHS = {"/health", "/", "/docs", "/openapi.json"}

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class RateLimiter:
    """
    Redis-based rate limiter using sliding window algorithm.
    """

    def __init__(
        self,
        redis_url: str,
        retry_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis_url = redis_url
        self.retry_seconds = retry_seconds
        self.clock = clock
        self._client = None
        self._retry_at = 0.0

    @property
    def client(self):
        """Lazy-load Redis client; after a failure, wait before reconnecting"""
        if self._client is None and self.clock() >= self._retry_at:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=1,
                )
                self._client.ping()  # Test connection
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed, retrying in {self.retry_seconds}s: {e}")
                self._disconnect()

        return self._client

    def _disconnect(self) -> None:
        self._client = None
        self._retry_at = self.clock() + self.retry_seconds

    def is_allowed(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int, int]:
        """
        Check if request is allowed under rate limit.

        Args:
            key: Rate limit key (e.g., "ratelimit:client:10.0.0.1")
            limit: Maximum requests allowed
            window_seconds: Time window in seconds

        Returns:
            (is_allowed, remaining, reset_time)
        """
        if not self.client:
            # No Redis - allow all
            return (True, limit, 0)

        now = time.time()
        window_start = now - window_seconds

        try:
            pipe = self.client.pipeline()

            # Remove old entries
            pipe.zremrangebyscore(key, 0, window_start)

            # Count current requests
            pipe.zcard(key)

            # Add current request
            pipe.zadd(key, {str(now): now})

            # Set expiry
            pipe.expire(key, window_seconds)

            results = pipe.execute()
            current_count = results[1]

            remaining = max(0, limit - current_count - 1)
            reset_time = int(now + window_seconds)

            if current_count >= limit:
                return (False, 0, reset_time)

            return (True, remaining, reset_time)

        except redis.RedisError as e:
            logger.warning(f"Rate limit check failed: {e}")
            self._disconnect()
            return (True, limit, 0)


# Singleton rate limiter
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get singleton rate limiter instance"""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(settings.redis_url, retry_seconds=settings.redis_retry_seconds)
    return _rate_limiter


def parse_networks(entries: Sequence[str]) -> List[Network]:
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy entry: {entry!r}")
    return networks


def _is_trusted(address: str, networks: Sequence[Network]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def client_key(request: Request, trusted_proxies: Sequence[Network] = ()) -> str:
    """
    Identify the caller.

    The peer address, unless the peer is a trusted proxy; then the right-most
    X-Forwarded-For hop that is not a trusted proxy.
    """
    peer = request.client.host if request.client else None
    if not peer:
        return "unknown"
    if not trusted_proxies or not _is_trusted(peer, trusted_proxies):
        return peer

    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware for rate limiting.
    """

    def __init__(self, app, limiter: Optional[RateLimiter] = None, settings: Optional[Settings] = None):
        super().__init__(app)
        self.settings = settings or get_settings()
        self.limiter = limiter or get_rate_limiter()
        self.trusted_proxies = parse_networks(self.settings.trusted_proxies)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.settings.rate_limit_enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        limit = self.settings.rate_limit_max
        # Redis calls block; keep them off the event loop
        allowed, remaining, reset = await run_in_threadpool(
            self.limiter.is_allowed,
            f"ratelimit:client:{client_key(request, self.trusted_proxies)}",
            limit,
            self.settings.rate_limit_window_seconds,
        )

        if not allowed:
            retry_after = max(0, reset - int(time.time()))
            return JSONResponse(
                status_code=429,
                content={
                    "status": "error",
                    "message": "Too many requests from this IP, please try again later",
                    "error": "rate_limited",
                },
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset),
                    "Retry-After": str(retry_after),
                }
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)

        return response
