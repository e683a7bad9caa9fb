"""Fixed-window quota tracking shared through a key-value store.

Any number of ``Limiter`` instances, in any number of processes, can count
against the same identifier. They never lock: each query watches the
window's ``count`` key, reads the window, and commits its write in a
transaction that the store aborts if ``count`` changed in between. A lost
race simply restarts the query.

Store key format:
- {prefix}:{identifier}:count - Remaining units in the current window
- {prefix}:{identifier}:reset - Window end, epoch seconds

Both keys share one millisecond TTL, set at creation and realigned to the
window end on every decrement.
"""

import asyncio
from typing import Any, Callable, Optional

from windowlimit.core.config import settings
from windowlimit.core.logging import get_log_context, get_logger
from windowlimit.exceptions import RateLimitExceededError, RetryExhaustedError

from .models import (
    ConflictRetryPolicy,
    LimiterConfig,
    LimitResult,
    Phase,
    StoreCommand,
)
from .store import (
    InMemoryWindowStore,
    RedisWindowStore,
    WindowSession,
    WindowStore,
    current_time_ms,
)

logger = get_logger(__name__)


def default_retry_policy() -> ConflictRetryPolicy:
    """Retry policy built from settings."""
    return ConflictRetryPolicy(
        max_attempts=settings.limiter_max_attempts or None,
        base_delay=settings.limiter_retry_base_delay,
        max_delay=settings.limiter_retry_max_delay,
    )


class Limiter:
    """Quota tracker for one identifier.

    Note that ``maximum`` and ``duration_ms`` live only in this object.
    ``total`` in every result is this instance's maximum, even when the
    window was created by an instance configured differently.
    """

    def __init__(
        self,
        identifier: str,
        store: WindowStore,
        maximum: Optional[int] = None,
        duration_ms: Optional[int] = None,
        *,
        key_prefix: Optional[str] = None,
        retry_policy: Optional[ConflictRetryPolicy] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if not identifier:
            raise ValueError(".identifier required")
        if store is None:
            raise ValueError(".store required")
        self.config = LimiterConfig(
            identifier=identifier,
            maximum=settings.limiter_default_max if maximum is None else maximum,
            duration_ms=(
                settings.limiter_default_duration_ms if duration_ms is None else duration_ms
            ),
            key_prefix=key_prefix or settings.limiter_key_prefix,
        )
        self.store = store
        self.retry_policy = retry_policy or default_retry_policy()
        self._clock = clock or current_time_ms

    @classmethod
    def from_config(
        cls,
        config: LimiterConfig,
        store: WindowStore,
        **kwargs: Any,
    ) -> "Limiter":
        return cls(
            config.identifier,
            store,
            config.maximum,
            config.duration_ms,
            key_prefix=config.key_prefix,
            **kwargs,
        )

    @property
    def identifier(self) -> str:
        return self.config.identifier

    @property
    def maximum(self) -> int:
        return self.config.maximum

    @property
    def duration_ms(self) -> int:
        return self.config.duration_ms

    def __repr__(self) -> str:
        return (
            f"<Limiter id={self.identifier}, duration={self.duration_ms}, "
            f"max={self.maximum}>"
        )

    async def query(self, decr_by: int = 1) -> LimitResult:
        """Consume ``decr_by`` units and return the window's new state.

        Creates the window if it does not exist. Restarts from the probe
        whenever a transaction loses to a concurrent writer, up to the retry
        policy's ``max_attempts``.

        Raises:
            ValueError: If decr_by is not a positive integer
            RetryExhaustedError: If every allowed attempt lost its race
            Store errors propagate unchanged and are never retried.
        """
        if isinstance(decr_by, bool) or not isinstance(decr_by, int) or decr_by < 1:
            raise ValueError(f"decr_by must be a positive integer, got {decr_by!r}")

        attempt = 0
        while True:
            result = await self._attempt(decr_by, attempt)
            if result is not None:
                return result
            attempt += 1
            if self.retry_policy.exhausted(attempt):
                logger.warning(
                    f"Giving up on {self.identifier} after {attempt} conflicting attempts",
                    extra=get_log_context(identifier=self.identifier, attempt=attempt),
                )
                raise RetryExhaustedError(self.identifier, attempt)
            delay = self.retry_policy.calculate_delay(attempt - 1)
            if delay > 0:
                await asyncio.sleep(delay)

    async def check(self, decr_by: int = 1) -> LimitResult:
        """Like ``query`` but raise once the window has nothing left.

        Raises:
            RateLimitExceededError: If the window's remaining quota is 0
        """
        result = await self.query(decr_by)
        if result.remaining <= 0:
            raise RateLimitExceededError(result)
        return result

    async def _attempt(self, decr_by: int, attempt: int) -> Optional[LimitResult]:
        """Run one probe and the phase it leads to.

        Returns None when the transaction did not take effect.
        """
        config = self.config
        async with self.store.session() as session:
            phase = Phase.PROBE
            await session.watch(config.count_key)
            count, reset = await session.mget(config.count_key, config.reset_key)

            if count is None or reset is None:
                phase = Phase.CREATE
                result = await self._create(
                    session, decr_by, None if reset is None else int(reset)
                )
            else:
                phase = Phase.DECREMENT
                result = await self._decrement(session, int(count), int(reset), decr_by)

        if result is None:
            logger.debug(
                f"Lost optimistic race for {self.identifier} in {phase.value}, restarting",
                extra=get_log_context(
                    identifier=self.identifier, phase=phase.value, attempt=attempt
                ),
            )
        return result

    async def _create(
        self, session: WindowSession, decr_by: int, reset: Optional[int] = None
    ) -> Optional[LimitResult]:
        config = self.config
        now = self._clock()
        if reset is None:
            reset = (now + config.duration_ms) // 1000
            ttl_ms = config.duration_ms
        else:
            # A surviving reset key pins the window end; count rejoins it
            ttl_ms = max(1, reset * 1000 - now)
        # The creator's own consumption is folded into the initial count
        remaining = max(0, config.maximum - (decr_by - 1))

        batch = await session.execute([
            StoreCommand.set_if_absent(config.count_key, remaining, ttl_ms),
            StoreCommand.set_if_absent(config.reset_key, reset, ttl_ms),
        ])
        if not batch.applied:
            return None
        return LimitResult(total=config.maximum, remaining=remaining, reset=reset)

    async def _decrement(
        self, session: WindowSession, count: int, reset: int, decr_by: int
    ) -> Optional[LimitResult]:
        config = self.config
        if count <= 0:
            return LimitResult(total=config.maximum, remaining=0, reset=reset)

        remaining = count - decr_by
        # The nominal end is whole seconds and may precede physical expiry
        ttl_ms = max(1, reset * 1000 - self._clock())

        batch = await session.execute([
            StoreCommand.set_if_present(config.count_key, remaining, ttl_ms),
            StoreCommand.pexpire(config.reset_key, ttl_ms),
        ])
        if not batch.applied:
            return None
        return LimitResult(total=config.maximum, remaining=max(remaining, 0), reset=reset)


_window_store: Optional[WindowStore] = None


def get_window_store(
    redis_client: Optional[Any] = None,
    redis_url: Optional[str] = None,
) -> WindowStore:
    """Get the global window store instance.

    Uses Redis when a client or URL is given or Redis is enabled in
    settings, otherwise an in-memory store.
    """
    global _window_store
    if _window_store is None:
        if redis_client is not None or redis_url is not None or settings.redis_enabled:
            _window_store = RedisWindowStore(redis_client=redis_client, redis_url=redis_url)
        else:
            logger.debug("Redis disabled, using in-memory window store")
            _window_store = InMemoryWindowStore()
    return _window_store


def reset_window_store() -> None:
    """Reset the global window store instance."""
    global _window_store
    _window_store = None
