"""Services package for the limiter."""

from windowlimit.services.fixed_window import (
    InMemoryWindowStore,
    Limiter,
    LimitResult,
    RedisWindowStore,
    get_window_store,
    reset_window_store,
)

__all__ = [
    "InMemoryWindowStore",
    "Limiter",
    "LimitResult",
    "RedisWindowStore",
    "get_window_store",
    "reset_window_store",
]
