"""Unit tests for the per-entity ledger lock manager."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.business.errors import LedgerLockTimeout
from app.services.ledger_lock import LedgerLockManager


@pytest.mark.unit
class TestLocalBackend:

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = LedgerLockManager(backend="local", timeout_seconds=1)
        order = []

        async def worker(name):
            async with locks.hold("invoice:1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = LedgerLockManager(backend="local", timeout_seconds=0.1)

        async with locks.hold("invoice:1"):
            async with locks.hold("invoice:2"):
                pass

    @pytest.mark.asyncio
    async def test_timeout_raises_and_lock_stays_usable(self):
        locks = LedgerLockManager(backend="local", timeout_seconds=0.05)

        async with locks.hold("invoice:1"):
            with pytest.raises(LedgerLockTimeout) as exc:
                async with locks.hold("invoice:1"):
                    pass
            assert exc.value.context["lock_key"] == "invoice:1"

        async with locks.hold("invoice:1"):
            pass

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = LedgerLockManager(backend="local", timeout_seconds=0.05)

        with pytest.raises(RuntimeError):
            async with locks.hold("invoice:1"):
                raise RuntimeError("boom")

        async with locks.hold("invoice:1"):
            pass

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_no_entry(self):
        locks = LedgerLockManager(backend="local", timeout_seconds=5)

        async def waiter():
            async with locks.hold("invoice:x"):
                pass

        async with locks.hold("invoice:x"):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert locks._local._locks == {}
        assert locks._local._waiters == {}

    @pytest.mark.asyncio
    async def test_entries_dropped_after_release(self):
        locks = LedgerLockManager(backend="local", timeout_seconds=0.05)

        async with locks.hold("invoice:1"):
            with pytest.raises(LedgerLockTimeout):
                async with locks.hold("invoice:1"):
                    pass

        assert locks._local._locks == {}
        assert locks._local._waiters == {}

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            LedgerLockManager(backend="zookeeper")


@pytest.mark.unit
class TestRedisBackend:

    @pytest.fixture
    def redis_client(self):
        client = AsyncMock()
        client.set.return_value = True
        client.eval.return_value = 1
        return client

    @pytest.mark.asyncio
    async def test_lease_taken_and_released_with_token(self, redis_client):
        locks = LedgerLockManager(backend="redis", timeout_seconds=1, lease_seconds=30)

        with patch("app.services.ledger_lock.redis.from_url", return_value=redis_client):
            async with locks.hold("invoice:1"):
                pass

        args, kwargs = redis_client.set.call_args
        assert args[0] == "ledger-lock:invoice:1"
        assert kwargs == {"nx": True, "ex": 30}
        token = args[1]
        redis_client.eval.assert_awaited_once()
        assert redis_client.eval.call_args.args[1:] == (1, "ledger-lock:invoice:1", token)

    @pytest.mark.asyncio
    async def test_retries_until_lease_is_free(self, redis_client):
        redis_client.set.side_effect = [None, None, True]
        locks = LedgerLockManager(backend="redis", timeout_seconds=1)
        locks.poll_interval = 0

        with patch("app.services.ledger_lock.redis.from_url", return_value=redis_client):
            async with locks.hold("invoice:1"):
                pass

        assert redis_client.set.await_count == 3

    @pytest.mark.asyncio
    async def test_times_out_while_held_elsewhere(self, redis_client):
        redis_client.set.return_value = None
        locks = LedgerLockManager(backend="redis", timeout_seconds=0.02)
        locks.poll_interval = 0.005

        with patch("app.services.ledger_lock.redis.from_url", return_value=redis_client):
            with pytest.raises(LedgerLockTimeout):
                async with locks.hold("invoice:1"):
                    pass

        redis_client.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_releases_connection(self, redis_client):
        locks = LedgerLockManager(backend="redis", timeout_seconds=1)

        with patch("app.services.ledger_lock.redis.from_url", return_value=redis_client):
            async with locks.hold("invoice:1"):
                pass
            await locks.close()

        redis_client.close.assert_awaited_once()
