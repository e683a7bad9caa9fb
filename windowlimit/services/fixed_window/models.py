"""Data models for fixed-window quota tracking."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

DEFAULT_MAX = 2500
DEFAULT_DURATION_MS = 3_600_000
DEFAULT_KEY_PREFIX = "limit"


class Phase(str, Enum):
    """States of the optimistic query loop."""
    PROBE = "probe"
    CREATE = "create"
    DECREMENT = "decrement"


def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")


@dataclass(frozen=True)
class LimiterConfig:
    """Client-side window configuration. Never persisted to the store.

    Attributes:
        identifier: What is being limited (user id, API key hash, ...)
        maximum: Quota units per window
        duration_ms: Window length in milliseconds
        key_prefix: Namespace for the derived store keys
    """
    identifier: str
    maximum: int = DEFAULT_MAX
    duration_ms: int = DEFAULT_DURATION_MS
    key_prefix: str = DEFAULT_KEY_PREFIX

    def __post_init__(self) -> None:
        if not self.identifier or not isinstance(self.identifier, str):
            raise ValueError("identifier required")
        _require_positive_int("maximum", self.maximum)
        _require_positive_int("duration_ms", self.duration_ms)
        if not self.key_prefix:
            raise ValueError("key_prefix required")

    @property
    def prefix(self) -> str:
        return f"{self.key_prefix}:{self.identifier}:"

    @property
    def count_key(self) -> str:
        """Store key holding the remaining units."""
        return self.prefix + "count"

    @property
    def reset_key(self) -> str:
        """Store key holding the window end in epoch seconds."""
        return self.prefix + "reset"


@dataclass(frozen=True)
class LimitResult:
    """Post-consumption state of a window."""
    total: int
    remaining: int
    reset: int

    def retry_after(self, now_ms: int) -> int:
        """Whole seconds until the window resets, never negative."""
        return max(0, -(-(self.reset * 1000 - now_ms) // 1000))

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "remaining": self.remaining,
            "reset": self.reset,
        }


@dataclass(frozen=True)
class StoreCommand:
    """One write queued inside a store transaction.

    ``op`` is ``"set"`` (with ``px`` and an ``NX``/``XX`` condition) or
    ``"pexpire"`` (with ``px`` only).
    """
    op: str
    key: str
    px: int
    value: Optional[int] = None
    condition: Optional[str] = None

    @classmethod
    def set_if_absent(cls, key: str, value: int, px: int) -> "StoreCommand":
        return cls(op="set", key=key, value=value, px=px, condition="NX")

    @classmethod
    def set_if_present(cls, key: str, value: int, px: int) -> "StoreCommand":
        return cls(op="set", key=key, value=value, px=px, condition="XX")

    @classmethod
    def pexpire(cls, key: str, px: int) -> "StoreCommand":
        return cls(op="pexpire", key=key, px=px)


@dataclass(frozen=True)
class BatchResult:
    """Normalized outcome of a store transaction.

    ``applied`` is False when the transaction was aborted because a watched
    key changed, or when its first conditional write did not take effect.
    Callers treat both the same way: someone else won the race.
    """
    applied: bool
    replies: Tuple[Any, ...] = field(default_factory=tuple)

    @classmethod
    def aborted(cls) -> "BatchResult":
        return cls(applied=False)

    @classmethod
    def from_values(cls, replies: Optional[Iterable[Any]]) -> "BatchResult":
        """Build from bare reply values (redis-py style).

        Exceptions returned inline (``raise_on_error=False``) are raised.
        """
        if replies is None:
            return cls.aborted()
        values = tuple(replies)
        for value in values:
            if isinstance(value, BaseException):
                raise value
        return cls(applied=bool(values) and values[0] is not None, replies=values)

    @classmethod
    def from_pairs(cls, replies: Optional[Iterable[Tuple[Any, Any]]]) -> "BatchResult":
        """Build from ``(error, value)`` reply pairs.

        The first non-null error is raised unchanged.
        """
        if replies is None:
            return cls.aborted()
        values = []
        for error, value in replies:
            if error is not None:
                raise error
            values.append(value)
        return cls.from_values(values)


@dataclass(frozen=True)
class ConflictRetryPolicy:
    """How often and how fast to restart after losing an optimistic race.

    Attributes:
        max_attempts: Attempts before RetryExhaustedError, None for no limit
        base_delay: Initial delay between attempts in seconds, 0 disables it
        max_delay: Upper bound for the delay in seconds
        exponential_base: Base for exponential calculation

    Example:
        >>> policy = ConflictRetryPolicy(max_attempts=10, base_delay=0.001)
        >>> policy.calculate_delay(attempt=2)
        0.004
    """
    max_attempts: Optional[int] = 100
    base_delay: float = 0.0
    max_delay: float = 0.05
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts is not None:
            _require_positive_int("max_attempts", self.max_attempts)
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative")

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (0-indexed)."""
        if self.base_delay <= 0:
            return 0.0
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts
