"""Rate limiting middleware backed by the fixed-window limiter.

Every request consumes one unit from its client's window. Responses carry
``X-RateLimit-Limit``, ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``;
a client whose window is exhausted gets 429 with ``Retry-After``.
"""

import hashlib
import time
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from windowlimit.core.config import settings
from windowlimit.core.logging import get_log_context, get_logger
from windowlimit.exceptions import RateLimitExceededError, RetryExhaustedError
from windowlimit.services.fixed_window import (
    Limiter,
    LimitResult,
    WindowStore,
    get_window_store,
)

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512


def get_client_key(request: Request) -> str:
    """Get rate limit identifier for the request.

    Uses API key if available, otherwise falls back to IP address.
    Both are hashed with SHA-256 so raw keys never reach the store.

    Raises:
        ValueError: If the bearer API key is longer than 512 characters
    """
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        if len(api_key) > MAX_API_KEY_LENGTH:
            raise ValueError(f"API key too long (max {MAX_API_KEY_LENGTH} characters)")
        key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
        return f"apikey:{key_hash}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"
    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return f"ip:{ip_hash}"


def rate_limit_headers(result: LimitResult) -> dict:
    """Headers describing the window after this request."""
    return {
        "X-RateLimit-Limit": str(result.total),
        "X-RateLimit-Remaining": str(max(result.remaining - 1, 0)),
        "X-RateLimit-Reset": str(result.reset),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce fixed-window limits on requests.

    Usage:
        app.add_middleware(RateLimitMiddleware, maximum=100, duration_ms=60_000)
    """

    def __init__(
        self,
        app,
        maximum: Optional[int] = None,
        duration_ms: Optional[int] = None,
        store: Optional[WindowStore] = None,
        key_func: Optional[Callable[[Request], str]] = None,
    ):
        super().__init__(app)
        self.maximum = settings.limiter_default_max if maximum is None else maximum
        self.duration_ms = (
            settings.limiter_default_duration_ms if duration_ms is None else duration_ms
        )
        for name, value in (("maximum", self.maximum), ("duration_ms", self.duration_ms)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        self._store = store
        self._key_func = key_func or get_client_key

    @property
    def store(self) -> WindowStore:
        if self._store is None:
            self._store = get_window_store()
        return self._store

    def _limiter(self, identifier: str) -> Limiter:
        return Limiter(
            identifier,
            self.store,
            self.maximum,
            self.duration_ms,
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        try:
            identifier = self._key_func(request)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})

        context = get_log_context(
            identifier=identifier,
            path=request.url.path,
            method=request.method,
        )
        try:
            result = await self._limiter(identifier).check()
        except RateLimitExceededError as e:
            retry_after = e.result.retry_after(int(time.time() * 1000))
            logger.info(
                f"Rate limit exceeded for {identifier}",
                extra={**context, "status_code": e.status_code},
            )
            return JSONResponse(
                status_code=e.status_code,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Rate limit exceeded. Please try again later.",
                    "retry_after": retry_after,
                },
                headers={
                    **rate_limit_headers(e.result),
                    "Retry-After": str(retry_after),
                },
            )
        except RetryExhaustedError as e:
            logger.warning(e.message, extra=context)
            return JSONResponse(
                status_code=e.status_code,
                content={"error": "rate_limit_contention", "message": e.message},
                headers={"Retry-After": "1"},
            )
        except (RedisError, OSError) as e:
            return await self._handle_store_failure(request, call_next, e, context)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(result))
        return response

    async def _handle_store_failure(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
        error: Exception,
        context: dict,
    ) -> Response:
        """Handle store failure with configurable fail-open/fail-closed policy."""
        if settings.rate_limit_fail_closed:
            logger.error(
                f"Rate limiting fail-closed triggered by store error: {error}",
                extra=context,
            )
            return JSONResponse(
                status_code=503,
                content={
                    "error": "rate_limit_unavailable",
                    "message": "Rate limiting is temporarily unavailable.",
                },
            )

        logger.warning(
            f"Rate limiting fail-open triggered by store error: {error}. "
            "Request allowed without rate limit check.",
            extra=context,
        )
        return await call_next(request)
