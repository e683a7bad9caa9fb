"""Middleware package for the limiter."""

from windowlimit.middleware.rate_limit import (
    RateLimitMiddleware,
    get_client_key,
    rate_limit_headers,
)

__all__ = ["RateLimitMiddleware", "get_client_key", "rate_limit_headers"]
