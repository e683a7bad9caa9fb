"""Store adapters for fixed-window quota tracking.

A limiter only needs a handful of primitives from its key-value store:
WATCH, MGET and a MULTI/EXEC batch of conditional ``SET ... PX`` and
``PEXPIRE`` commands. Each adapter maps one concrete client onto the
``WindowSession`` interface and normalizes transaction replies into a
``BatchResult``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from redis.exceptions import WatchError

from windowlimit.core.config import settings
from windowlimit.core.logging import get_logger

from .models import BatchResult, StoreCommand

logger = get_logger(__name__)


def current_time_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class WindowSession(ABC):
    """One connection's view of the store for a single optimistic attempt."""

    @abstractmethod
    async def watch(self, *keys: str) -> None:
        """Abort the next ``execute`` if any of ``keys`` changes meanwhile."""
        pass

    @abstractmethod
    async def mget(self, *keys: str) -> List[Any]:
        """Read several keys at once; absent keys come back as None."""
        pass

    @abstractmethod
    async def execute(self, commands: Sequence[StoreCommand]) -> BatchResult:
        """Run ``commands`` as one transaction.

        Returns:
            BatchResult with ``applied=False`` if a watched key changed or the
            first command's condition did not hold.

        Raises:
            Any store error, unchanged.
        """
        pass


class WindowStore(ABC):
    """Abstract base class for window stores."""

    @abstractmethod
    def session(self) -> AsyncContextManager[WindowSession]:
        """Async context manager yielding a fresh ``WindowSession``."""
        pass

    async def close(self) -> None:
        """Release store resources."""
        pass


# ============================================================================
# Redis
# ============================================================================

class RedisWindowSession(WindowSession):
    """Session backed by a redis-py transactional pipeline."""

    def __init__(self, pipe: Any) -> None:
        self._pipe = pipe

    async def watch(self, *keys: str) -> None:
        await self._pipe.watch(*keys)

    async def mget(self, *keys: str) -> List[Any]:
        # After WATCH the pipeline runs commands immediately
        return list(await self._pipe.mget(list(keys)))

    async def execute(self, commands: Sequence[StoreCommand]) -> BatchResult:
        pipe = self._pipe
        pipe.multi()
        for command in commands:
            if command.op == "set":
                pipe.set(
                    command.key,
                    command.value,
                    px=command.px,
                    nx=command.condition == "NX",
                    xx=command.condition == "XX",
                )
            elif command.op == "pexpire":
                pipe.pexpire(command.key, command.px)
            else:
                raise ValueError(f"Unsupported store command: {command.op}")
        try:
            replies = await pipe.execute()
        except WatchError:
            return BatchResult.aborted()
        return BatchResult.from_values(replies)


class RedisWindowStore(WindowStore):
    """Window store on top of ``redis.asyncio``.

    The client is shared by every limiter using this store; connection
    pooling and reconnection are left to redis-py.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
    ) -> None:
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url)
            logger.info("Connected window store to Redis")
        return self._redis

    @asynccontextmanager
    async def session(self) -> AsyncIterator[WindowSession]:
        async with self._get_redis().pipeline(transaction=True) as pipe:
            yield RedisWindowSession(pipe)

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


# ============================================================================
# In-memory
# ============================================================================

@dataclass
class _Entry:
    """Stored value with millisecond expiry."""

    value: bytes
    expires_at: Optional[int] = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class InMemoryWindowSession(WindowSession):
    """Session against an ``InMemoryWindowStore``."""

    def __init__(self, store: "InMemoryWindowStore") -> None:
        self._store = store
        self._watched: Dict[str, int] = {}

    async def watch(self, *keys: str) -> None:
        async with self._store._lock:
            for key in keys:
                self._store._purge(key)
                self._watched[key] = self._store._versions.get(key, 0)

    async def mget(self, *keys: str) -> List[Any]:
        async with self._store._lock:
            return [self._store._read(key) for key in keys]

    async def execute(self, commands: Sequence[StoreCommand]) -> BatchResult:
        store = self._store
        if store.before_execute is not None:
            await store.before_execute(commands)
        async with store._lock:
            watched, self._watched = self._watched, {}
            for key, version in watched.items():
                store._purge(key)
                if store._versions.get(key, 0) != version:
                    return BatchResult.aborted()
            replies = [store._apply(command) for command in commands]
            store.transactions.append(tuple(commands))
        return BatchResult.from_pairs(replies)


class InMemoryWindowStore(WindowStore):
    """In-memory window store with Redis transaction semantics.

    Suitable for tests and single-process deployments. Every write, every
    expiry refresh and every lazy expiration bumps the key's version, which
    is what WATCH compares at EXEC time. Commands inside a transaction are
    applied in order and never rolled back, like MULTI/EXEC.

    Attributes:
        before_execute: Optional coroutine function called with the queued
            commands right before EXEC; lets tests interleave a rival writer.
        transactions: Command batches that passed the watch check, in order.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        before_execute: Optional[Callable[[Sequence[StoreCommand]], Awaitable[None]]] = None,
    ) -> None:
        self._clock = clock or current_time_ms
        self._data: Dict[str, _Entry] = {}
        self._versions: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.before_execute = before_execute
        self.transactions: List[Tuple[StoreCommand, ...]] = []
        self.sessions_opened = 0

    @asynccontextmanager
    async def session(self) -> AsyncIterator[WindowSession]:
        self.sessions_opened += 1
        yield InMemoryWindowSession(self)

    def _touch(self, key: str) -> None:
        self._versions[key] = self._versions.get(key, 0) + 1

    def _purge(self, key: str) -> None:
        entry = self._data.get(key)
        if entry is not None and entry.is_expired(self._clock()):
            del self._data[key]
            self._touch(key)

    def _read(self, key: str) -> Optional[bytes]:
        self._purge(key)
        entry = self._data.get(key)
        return None if entry is None else entry.value

    def _apply(self, command: StoreCommand) -> Tuple[Optional[Exception], Any]:
        """Apply one command, returning an ``(error, value)`` reply pair."""
        key = command.key
        self._purge(key)
        exists = key in self._data
        if command.op == "set":
            if command.px is None or command.px <= 0:
                return ValueError("invalid expire time in 'set' command"), None
            if command.condition == "NX" and exists:
                return None, None
            if command.condition == "XX" and not exists:
                return None, None
            self._data[key] = _Entry(
                value=str(command.value).encode(),
                expires_at=self._clock() + command.px,
            )
            self._touch(key)
            return None, True
        if command.op == "pexpire":
            if not exists:
                return None, False
            if command.px <= 0:
                del self._data[key]
            else:
                self._data[key].expires_at = self._clock() + command.px
            self._touch(key)
            return None, True
        return ValueError(f"Unsupported store command: {command.op}"), None

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            return self._read(key)

    async def set(self, key: str, value: Any, px: Optional[int] = None) -> None:
        """Unconditional write, bumping the key's version like any SET."""
        async with self._lock:
            expires_at = None if px is None else self._clock() + px
            self._data[key] = _Entry(value=str(value).encode(), expires_at=expires_at)
            self._touch(key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self._data.pop(key, None) is not None:
                self._touch(key)

    async def pttl(self, key: str) -> int:
        """Remaining TTL in ms; -2 if the key is absent, -1 if it never expires."""
        async with self._lock:
            self._purge(key)
            entry = self._data.get(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return entry.expires_at - self._clock()

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()
