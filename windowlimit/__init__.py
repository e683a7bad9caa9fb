"""Distributed fixed-window quota tracking on Redis."""

from windowlimit.exceptions import (
    LimiterException,
    RateLimitExceededError,
    RetryExhaustedError,
)
from windowlimit.services.fixed_window import (
    BatchResult,
    ConflictRetryPolicy,
    InMemoryWindowStore,
    Limiter,
    LimiterConfig,
    LimitResult,
    RedisWindowStore,
    WindowSession,
    WindowStore,
    get_window_store,
    reset_window_store,
)

__all__ = [
    "LimiterException",
    "RateLimitExceededError",
    "RetryExhaustedError",
    "BatchResult",
    "ConflictRetryPolicy",
    "InMemoryWindowStore",
    "Limiter",
    "LimiterConfig",
    "LimitResult",
    "RedisWindowStore",
    "WindowSession",
    "WindowStore",
    "get_window_store",
    "reset_window_store",
]
