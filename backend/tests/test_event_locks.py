"""
Tests for per-event single-writer locks (in-process and Redis-backed).
"""

import asyncio
from types import SimpleNamespace

import pytest

from discovery.errors import CatalogUnavailableError, EventBusyError, LockUnavailableError
from discovery.locks import EVENT_LOCK_KEY, EventLockRegistry, RedisEventLocks, default_locks, event_locks

EVENT_ID = "00000000-0000-0000-0000-00000000e001"
KEY = EVENT_LOCK_KEY.format(event_id=EVENT_ID)


class TestEventLockRegistry:
    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = EventLockRegistry()

        async with locks.hold(EVENT_ID, timeout=1.0):
            assert EVENT_ID in locks._locks

        assert locks._locks == {}
        assert locks._users == {}

    @pytest.mark.asyncio
    async def test_lock_survives_while_a_waiter_queues(self):
        locks = EventLockRegistry()
        entered = asyncio.Event()
        release = asyncio.Event()
        order = []

        async def first():
            async with locks.hold(EVENT_ID, timeout=1.0):
                order.append("first")
                entered.set()
                await release.wait()

        async def second():
            await entered.wait()
            async with locks.hold(EVENT_ID, timeout=1.0):
                order.append("second")

        task_a = asyncio.create_task(first())
        task_b = asyncio.create_task(second())
        await entered.wait()
        for _ in range(3):
            await asyncio.sleep(0)
        assert locks._users[EVENT_ID] == 2
        release.set()
        await asyncio.gather(task_a, task_b)

        assert order == ["first", "second"]
        assert locks._locks == {}

    @pytest.mark.asyncio
    async def test_timeout_is_event_busy_and_cleans_up(self):
        locks = EventLockRegistry()

        async with locks.hold(EVENT_ID, timeout=1.0):
            with pytest.raises(EventBusyError):
                async with locks.hold(EVENT_ID, timeout=0.05):
                    pass
            assert locks._users[EVENT_ID] == 1

        assert locks._locks == {}


class TestRedisEventLocks:
    @pytest.mark.asyncio
    async def test_acquires_and_releases_the_shared_key(self, fake_redis):
        locks = RedisEventLocks("redis://localhost:6379/0", ttl_seconds=120, local=EventLockRegistry())

        async with locks.hold(EVENT_ID, timeout=2.0):
            assert fake_redis.held == {KEY}

        assert fake_redis.released == [KEY]
        assert fake_redis.lock_kwargs == {"timeout": 120, "blocking_timeout": 2.0}
        assert fake_redis.closed == 1

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_is_event_busy(self, fake_redis):
        fake_redis.held.add(KEY)
        local = EventLockRegistry()
        locks = RedisEventLocks("redis://localhost:6379/0", ttl_seconds=120, local=local)

        with pytest.raises(EventBusyError):
            async with locks.hold(EVENT_ID, timeout=0.1):
                pass

        assert fake_redis.released == []
        assert fake_redis.closed == 1
        assert local._locks == {}

    @pytest.mark.asyncio
    async def test_unreachable_redis_is_catalog_unavailable(self, fake_redis):
        fake_redis.unreachable = True
        locks = RedisEventLocks("redis://localhost:6379/0", ttl_seconds=120, local=EventLockRegistry())

        with pytest.raises(LockUnavailableError) as excinfo:
            async with locks.hold(EVENT_ID, timeout=0.1):
                pass

        assert isinstance(excinfo.value, CatalogUnavailableError)
        assert excinfo.value.event_id == EVENT_ID

    @pytest.mark.asyncio
    async def test_release_on_error_inside_the_block(self, fake_redis):
        locks = RedisEventLocks("redis://localhost:6379/0", ttl_seconds=120, local=EventLockRegistry())

        with pytest.raises(RuntimeError):
            async with locks.hold(EVENT_ID, timeout=1.0):
                raise RuntimeError("step failed")

        assert fake_redis.held == set()


class TestBackendSelection:
    def test_redis_backend(self):
        settings = SimpleNamespace(event_lock_backend="redis", redis_url="redis://cache:6379/1", event_lock_ttl_seconds=60)

        locks = event_locks(settings)

        assert isinstance(locks, RedisEventLocks)
        assert locks.redis_url == "redis://cache:6379/1"
        assert locks.ttl_seconds == 60

    def test_local_backend_and_unset_fall_back_to_process_locks(self):
        assert event_locks(SimpleNamespace(event_lock_backend="local")) is default_locks
        assert event_locks(SimpleNamespace()) is default_locks
