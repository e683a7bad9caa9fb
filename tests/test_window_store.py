"""Tests for window store adapters and transaction result normalization."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, WatchError

from windowlimit.services.fixed_window import (
    BatchResult,
    InMemoryWindowStore,
    Limiter,
    LimitResult,
    RedisWindowStore,
    StoreCommand,
    get_window_store,
    reset_window_store,
)

T0 = 1_700_000_000_000


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_window_store()
    yield
    reset_window_store()


@pytest.fixture
def mock_pipe():
    """Create a mock redis-py transactional pipeline."""
    pipe = MagicMock()
    pipe.__aenter__.return_value = pipe
    pipe.__aexit__.return_value = False
    pipe.watch = AsyncMock()
    pipe.mget = AsyncMock(return_value=[b"5", b"1700000060"])
    pipe.execute = AsyncMock(return_value=[True, True])
    return pipe


@pytest.fixture
def mock_redis(mock_pipe):
    """Create a mock Redis client handing out ``mock_pipe``."""
    redis = MagicMock()
    redis.pipeline.return_value = mock_pipe
    redis.aclose = AsyncMock()
    return redis


def make_limiter(store, now=T0 + 10_000):
    return Limiter("abc", store, 10, 60_000, clock=lambda: now)


# ============================================================================
# Test BatchResult
# ============================================================================

class TestBatchResult:
    """Test normalization of both reply conventions."""

    def test_aborted(self):
        assert BatchResult.aborted().applied is False
        assert BatchResult.from_values(None).applied is False
        assert BatchResult.from_pairs(None).applied is False

    def test_bare_values(self):
        assert BatchResult.from_values([True, True]).applied is True
        assert BatchResult.from_values([None, None]).applied is False
        assert BatchResult.from_values([]).applied is False

    def test_first_reply_decides(self):
        # A failed NX on the second key does not undo the first write
        result = BatchResult.from_values([True, None])
        assert result.applied is True
        assert result.replies == (True, None)

    def test_zero_first_reply_counts_as_applied(self):
        assert BatchResult.from_values([0, 1]).applied is True

    def test_pairs(self):
        assert BatchResult.from_pairs([(None, "OK"), (None, 1)]).applied is True
        assert BatchResult.from_pairs([(None, None), (None, 1)]).applied is False

    def test_inline_error_is_raised(self):
        error = ResponseError("invalid expire time")
        with pytest.raises(ResponseError) as exc_info:
            BatchResult.from_values([True, error])
        assert exc_info.value is error

    def test_pair_error_is_raised(self):
        error = ResponseError("WRONGTYPE")
        with pytest.raises(ResponseError):
            BatchResult.from_pairs([(None, True), (error, None)])


class TestStoreCommand:
    def test_constructors(self):
        assert StoreCommand.set_if_absent("k", 3, 100) == StoreCommand(
            op="set", key="k", value=3, px=100, condition="NX"
        )
        assert StoreCommand.set_if_present("k", 3, 100).condition == "XX"
        assert StoreCommand.pexpire("k", 100) == StoreCommand(op="pexpire", key="k", px=100)


class TestLimitResult:
    def test_retry_after_rounds_up(self):
        result = LimitResult(total=10, remaining=0, reset=1_700_000_060)
        assert result.retry_after(1_700_000_059_001) == 1
        assert result.retry_after(1_700_000_000_000) == 60

    def test_retry_after_never_negative(self):
        result = LimitResult(total=10, remaining=0, reset=1_700_000_060)
        assert result.retry_after(1_700_000_061_000) == 0

    def test_to_dict(self):
        result = LimitResult(total=10, remaining=4, reset=1_700_000_060)
        assert result.to_dict() == {"total": 10, "remaining": 4, "reset": 1_700_000_060}


# ============================================================================
# Test RedisWindowStore
# ============================================================================

class TestRedisWindowStore:
    """Test the redis-py adapter's command shapes."""

    @pytest.mark.asyncio
    async def test_decrement_commands(self, mock_redis, mock_pipe):
        store = RedisWindowStore(redis_client=mock_redis)

        result = await make_limiter(store).query()

        assert result == LimitResult(total=10, remaining=4, reset=1_700_000_060)
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        mock_pipe.watch.assert_awaited_once_with("limit:abc:count")
        mock_pipe.mget.assert_awaited_once_with(["limit:abc:count", "limit:abc:reset"])
        mock_pipe.multi.assert_called_once()
        mock_pipe.set.assert_called_once_with(
            "limit:abc:count", 4, px=50_000, nx=False, xx=True
        )
        mock_pipe.pexpire.assert_called_once_with("limit:abc:reset", 50_000)
        mock_pipe.__aexit__.assert_awaited()

    @pytest.mark.asyncio
    async def test_create_commands(self, mock_redis, mock_pipe):
        mock_pipe.mget.return_value = [None, None]
        store = RedisWindowStore(redis_client=mock_redis)

        result = await make_limiter(store, now=T0).query(2)

        assert result == LimitResult(total=10, remaining=9, reset=1_700_000_060)
        assert mock_pipe.set.call_args_list[0].args == ("limit:abc:count", 9)
        assert mock_pipe.set.call_args_list[0].kwargs == {"px": 60_000, "nx": True, "xx": False}
        assert mock_pipe.set.call_args_list[1].args == ("limit:abc:reset", 1_700_000_060)
        assert mock_pipe.set.call_args_list[1].kwargs["nx"] is True

    @pytest.mark.asyncio
    async def test_exhausted_window_skips_transaction(self, mock_redis, mock_pipe):
        mock_pipe.mget.return_value = [b"0", b"1700000060"]
        store = RedisWindowStore(redis_client=mock_redis)

        result = await make_limiter(store).query()

        assert result.remaining == 0
        mock_pipe.multi.assert_not_called()
        mock_pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_watch_error_restarts(self, mock_redis, mock_pipe):
        mock_pipe.mget.side_effect = [[b"5", b"1700000060"], [b"3", b"1700000060"]]
        mock_pipe.execute.side_effect = [WatchError("changed"), [True, True]]
        store = RedisWindowStore(redis_client=mock_redis)

        result = await make_limiter(store).query()

        assert result.remaining == 2
        assert mock_pipe.watch.await_count == 2
        assert mock_pipe.set.call_args_list[-1].args == ("limit:abc:count", 2)

    @pytest.mark.asyncio
    async def test_lost_create_race_restarts(self, mock_redis, mock_pipe):
        mock_pipe.mget.side_effect = [[None, None], [b"10", b"1700000060"]]
        mock_pipe.execute.side_effect = [[None, None], [True, True]]
        store = RedisWindowStore(redis_client=mock_redis)

        result = await make_limiter(store).query()

        assert result.remaining == 9

    @pytest.mark.asyncio
    async def test_redis_error_propagates(self, mock_redis, mock_pipe):
        mock_pipe.execute.side_effect = RedisConnectionError("down")
        store = RedisWindowStore(redis_client=mock_redis)

        with pytest.raises(RedisConnectionError):
            await make_limiter(store).query()
        assert mock_pipe.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_close(self, mock_redis):
        store = RedisWindowStore(redis_client=mock_redis)
        await store.close()
        mock_redis.aclose.assert_awaited_once()

    def test_lazy_client_from_url(self):
        store = RedisWindowStore(redis_url="redis://example:6379/1")
        with patch("redis.asyncio.from_url") as mock_from_url:
            client = store._get_redis()
        mock_from_url.assert_called_once_with("redis://example:6379/1")
        assert client is mock_from_url.return_value


# ============================================================================
# Test InMemoryWindowStore
# ============================================================================

class TestInMemoryWindowStore:
    """Test Redis transaction semantics of the in-memory store."""

    @pytest.fixture
    def clock(self):
        class _Clock:
            now = T0

            def __call__(self):
                return self.now
        return _Clock()

    @pytest.fixture
    def store(self, clock):
        return InMemoryWindowStore(clock=clock)

    @pytest.mark.asyncio
    async def test_set_if_absent(self, store):
        async with store.session() as session:
            result = await session.execute([StoreCommand.set_if_absent("k", 1, 1000)])
        assert result.applied is True

        async with store.session() as session:
            result = await session.execute([StoreCommand.set_if_absent("k", 2, 1000)])
        assert result.applied is False
        assert await store.get("k") == b"1"

    @pytest.mark.asyncio
    async def test_set_if_present(self, store):
        async with store.session() as session:
            result = await session.execute([StoreCommand.set_if_present("k", 1, 1000)])
        assert result.applied is False
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_no_rollback_inside_transaction(self, store):
        await store.set("b", 9)
        async with store.session() as session:
            result = await session.execute([
                StoreCommand.set_if_absent("a", 1, 1000),
                StoreCommand.set_if_absent("b", 1, 1000),
            ])
        assert result.replies == (True, None)
        assert await store.get("a") == b"1"
        assert await store.get("b") == b"9"

    @pytest.mark.asyncio
    async def test_watch_aborts_on_change(self, store):
        await store.set("k", 1)
        async with store.session() as session:
            await session.watch("k")
            await store.set("k", 2)
            result = await session.execute([StoreCommand.set_if_present("k", 3, 1000)])
        assert result.applied is False
        assert result.replies == ()
        assert await store.get("k") == b"2"

    @pytest.mark.asyncio
    async def test_watch_aborts_on_expiry(self, store, clock):
        await store.set("k", 1, px=100)
        async with store.session() as session:
            await session.watch("k")
            clock.now += 100
            result = await session.execute([StoreCommand.set_if_absent("k", 3, 1000)])
        assert result.applied is False

    @pytest.mark.asyncio
    async def test_pexpire_counts_as_change(self, store):
        await store.set("k", 1, px=1000)
        async with store.session() as session:
            await session.watch("k")
            async with store.session() as rival:
                await rival.execute([StoreCommand.pexpire("k", 5000)])
            result = await session.execute([StoreCommand.set_if_present("k", 3, 1000)])
        assert result.applied is False
        assert await store.pttl("k") == 5000

    @pytest.mark.asyncio
    async def test_pexpire_missing_key(self, store):
        async with store.session() as session:
            result = await session.execute([StoreCommand.pexpire("k", 1000)])
        assert result.replies == (False,)

    @pytest.mark.asyncio
    async def test_mget(self, store):
        await store.set("a", 1)
        async with store.session() as session:
            assert await session.mget("a", "b") == [b"1", None]

    @pytest.mark.asyncio
    async def test_non_positive_px_is_a_store_error(self, store):
        async with store.session() as session:
            with pytest.raises(ValueError, match="invalid expire time"):
                await session.execute([StoreCommand.set_if_absent("k", 1, 0)])

    @pytest.mark.asyncio
    async def test_pttl(self, store, clock):
        assert await store.pttl("k") == -2
        await store.set("k", 1)
        assert await store.pttl("k") == -1
        await store.set("k", 1, px=500)
        clock.now += 200
        assert await store.pttl("k") == 300

    @pytest.mark.asyncio
    async def test_close_clears_data(self, store):
        await store.set("k", 1)
        await store.close()
        assert await store.get("k") is None


# ============================================================================
# Test store factory
# ============================================================================

class TestGetWindowStore:
    def test_in_memory_by_default(self):
        store = get_window_store()
        assert isinstance(store, InMemoryWindowStore)
        assert get_window_store() is store

    def test_redis_when_client_given(self, mock_redis):
        store = get_window_store(redis_client=mock_redis)
        assert isinstance(store, RedisWindowStore)

    def test_redis_when_enabled(self):
        from windowlimit.core.config import settings

        with patch.object(settings, "redis_enabled", True):
            store = get_window_store()
        assert isinstance(store, RedisWindowStore)

    def test_reset(self):
        store = get_window_store()
        reset_window_store()
        assert get_window_store() is not store
