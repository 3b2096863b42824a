"""
Middleware Package
==================

FastAPI middleware for rate limiting and security headers.
"""

from .rate_limit import (
    RateLimitMiddleware,
    RateLimiter,
    get_rate_limiter,
)
from .security import SecurityHeadersMiddleware

__all__ = [
    "RateLimitMiddleware",
    "RateLimiter",
    "get_rate_limiter",
    "SecurityHeadersMiddleware",
]
