"""Distributed fixed-window quota tracking.

Limiters in separate processes share one counter per identifier through
Redis, using WATCH / MULTI / EXEC instead of locks.
"""

from .models import (
    BatchResult,
    ConflictRetryPolicy,
    LimiterConfig,
    LimitResult,
    Phase,
    StoreCommand,
)
from .service import (
    Limiter,
    default_retry_policy,
    get_window_store,
    reset_window_store,
)
from .store import (
    InMemoryWindowSession,
    InMemoryWindowStore,
    RedisWindowSession,
    RedisWindowStore,
    WindowSession,
    WindowStore,
)

__all__ = [
    "BatchResult",
    "ConflictRetryPolicy",
    "LimiterConfig",
    "LimitResult",
    "Phase",
    "StoreCommand",
    "Limiter",
    "default_retry_policy",
    "get_window_store",
    "reset_window_store",
    "InMemoryWindowSession",
    "InMemoryWindowStore",
    "RedisWindowSession",
    "RedisWindowStore",
    "WindowSession",
    "WindowStore",
]
