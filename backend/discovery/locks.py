"""
Single-writer locks keyed by event id.

Two backends share one interface, ``hold(event_id, timeout=...)``, an async
context manager that raises ``EventBusyError`` when the lock is not free
within ``timeout`` seconds:

    EventLockRegistry   asyncio locks, one process
    RedisEventLocks     Redis lock ``gates:lock:{event_id}`` on top of the
                        in-process lock, shared by API processes, Celery
                        workers, and the CLI

Usage:
    from discovery.locks import event_locks

    async with event_locks(settings).hold(event_id, timeout=30):
        ...
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import structlog

from discovery.errors import EventBusyError, LockUnavailableError

logger = structlog.get_logger()

EVENT_LOCK_KEY = "gates:lock:{event_id}"


class EventLockRegistry:
    """One ``asyncio.Lock`` per event; different events never contend."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def lock_for(self, event_id) -> asyncio.Lock:
        key = str(event_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, event_id, *, timeout: float) -> AsyncIterator[None]:
        key = str(event_id)
        lock = self.lock_for(key)
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise EventBusyError(
                    f"Timed out after {timeout}s waiting for the event lock",
                    event_id=key,
                ) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                if not lock.locked():
                    self._locks.pop(key, None)


default_locks = EventLockRegistry()


def _redis_client(redis_url: str):
    import redis.asyncio as redis

    return redis.from_url(redis_url)


class RedisEventLocks:
    """
    Cross-process event lock backed by redis-py's ``Lock``.

    A fresh client is opened per ``hold`` so the lock works from any event
    loop, including the one ``asyncio.run`` creates inside a Celery task.
    Same-process callers queue on the local registry first and only then
    contend in Redis.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int,
        local: EventLockRegistry | None = None,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.local = local or default_locks
        self._client_factory = client_factory or _redis_client

    @asynccontextmanager
    async def hold(self, event_id, *, timeout: float) -> AsyncIterator[None]:
        from redis.exceptions import ConnectionError as RedisConnectionError
        from redis.exceptions import LockError
        from redis.exceptions import TimeoutError as RedisTimeoutError

        key = str(event_id)
        async with self.local.hold(key, timeout=timeout):
            client = self._client_factory(self.redis_url)
            try:
                lock = client.lock(
                    EVENT_LOCK_KEY.format(event_id=key),
                    timeout=self.ttl_seconds,
                    blocking_timeout=timeout,
                )
                try:
                    acquired = await lock.acquire()
                except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
                    raise LockUnavailableError(f"Event lock store unavailable: {exc}", event_id=key) from exc
                if not acquired:
                    raise EventBusyError(
                        f"Timed out after {timeout}s waiting for the event lock",
                        event_id=key,
                    )
                try:
                    yield
                finally:
                    try:
                        await lock.release()
                    except LockError:
                        logger.warning("event_lock.expired_before_release", event_id=key, ttl_seconds=self.ttl_seconds)
            finally:
                await client.aclose()


def event_locks(settings: Any) -> EventLockRegistry | RedisEventLocks:
    """The lock backend ``settings.event_lock_backend`` selects (``local`` when unset)."""
    if getattr(settings, "event_lock_backend", "local") == "redis":
        return RedisEventLocks(settings.redis_url, ttl_seconds=getattr(settings, "event_lock_ttl_seconds", 900))
    return default_locks
