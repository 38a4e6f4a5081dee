"""
Shared key-value storage for cache entries, refresh locks and rate windows.

Two backends share one interface:
- RedisStore: the deployment store, shared by every process.
- InMemoryStore: process-local, for development and tests.

Every key carries its own TTL; expiry is owned by the store, nothing is
ever deleted explicitly.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import json
import logging
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """Raised when the backing store cannot be reached or errors out."""


@dataclass
class CacheEntry:
    """A cached value with the time it has left to live."""

    value: Any
    remaining_ttl: float  # seconds; <= 0 when the key has no expiry


@dataclass
class WindowResult:
    """Outcome of counting one event against a sliding window."""

    allowed: bool
    count: int
    limit: int
    reset_in: float  # seconds until the oldest counted event leaves the window


class Store(abc.ABC):
    """Abstract async store. All operations may raise StoreUnavailable."""

    @abc.abstractmethod
    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Atomically read a value and its remaining TTL."""

    @abc.abstractmethod
    async def set_entry(self, key: str, value: Any, ttl: float) -> None:
        """Write a JSON value that expires after `ttl` seconds."""

    @abc.abstractmethod
    async def get_flag(self, key: str) -> bool:
        """Return True if the flag is set and not expired."""

    @abc.abstractmethod
    async def set_flag(
        self, key: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        """Set a flag expiring after `ttl` seconds. Returns whether it was written."""

    @abc.abstractmethod
    async def hit_window(self, key: str, limit: int, window: float) -> WindowResult:
        """Count one event in the sliding window unless it would exceed `limit`."""

    async def close(self) -> None:
        """Release underlying resources if any."""
        return None


class InMemoryStore(Store):
    """
    Process-local store with lazy TTL expiry.

    Not shared across processes: only suitable for a single worker or tests.
    """

    @dataclass
    class _Entry:
        value: Any
        expires_at: float

    def __init__(self) -> None:
        self._data: dict[str, InMemoryStore._Entry] = {}
        self._windows: dict[str, deque[float]] = {}
        self._window_lock = asyncio.Lock()
        self._clock = time.monotonic  # overridable for testing

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._live(key)
        if entry is None:
            return None
        return CacheEntry(
            value=copy.deepcopy(entry.value),
            remaining_ttl=entry.expires_at - self._clock(),
        )

    async def set_entry(self, key: str, value: Any, ttl: float) -> None:
        self._data[key] = InMemoryStore._Entry(
            value=copy.deepcopy(value), expires_at=self._clock() + ttl
        )

    async def get_flag(self, key: str) -> bool:
        return self._live(key) is not None

    async def set_flag(
        self, key: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        self._data[key] = InMemoryStore._Entry(
            value=True, expires_at=self._clock() + ttl
        )
        return True

    async def hit_window(self, key: str, limit: int, window: float) -> WindowResult:
        async with self._window_lock:
            now = self._clock()
            events = self._windows.setdefault(key, deque())
            while events and events[0] <= now - window:
                events.popleft()

            if len(events) >= limit:
                reset_in = events[0] + window - now if events else window
                return WindowResult(
                    allowed=False, count=len(events), limit=limit, reset_in=reset_in
                )

            events.append(now)
            return WindowResult(
                allowed=True,
                count=len(events),
                limit=limit,
                reset_in=events[0] + window - now,
            )

    def clear(self) -> None:
        """Remove all keys and windows."""
        self._data.clear()
        self._windows.clear()


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailable(f"Redis {operation} failed: {exc}") from exc


class RedisStore(Store):
    """Redis-backed store shared by all service instances."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis
        self._clock = time.time  # window scores must agree across hosts

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStore":
        client = aioredis.from_url(url, decode_responses=True, **kwargs)
        return cls(client)

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        with _redis_errors("read"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.pttl(key)
                pipe.get(key)
                ttl_ms, payload = await pipe.execute()

        if payload is None:
            return None
        try:
            value = json.loads(payload)
        except ValueError:
            logger.warning("Discarding undecodable cache payload for %s", key)
            return None
        return CacheEntry(value=value, remaining_ttl=ttl_ms / 1000.0)

    async def set_entry(self, key: str, value: Any, ttl: float) -> None:
        payload = json.dumps(value)
        with _redis_errors("write"):
            await self._redis.set(key, payload, px=int(ttl * 1000))

    async def get_flag(self, key: str) -> bool:
        with _redis_errors("read"):
            return bool(await self._redis.exists(key))

    async def set_flag(
        self, key: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        with _redis_errors("write"):
            written = await self._redis.set(
                key, "1", px=int(ttl * 1000), nx=only_if_absent
            )
        return bool(written)

    async def hit_window(self, key: str, limit: int, window: float) -> WindowResult:
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex}"
        with _redis_errors("rate window"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - window)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.pexpire(key, int(window * 1000))
                _, _, count, _ = await pipe.execute()

            if count <= limit:
                return WindowResult(
                    allowed=True, count=count, limit=limit, reset_in=window
                )

            # Over the limit: this event does not count
            await self._redis.zrem(key, member)
            oldest = await self._redis.zrange(key, 0, 0, withscores=True)

        reset_in = oldest[0][1] + window - now if oldest else window
        return WindowResult(
            allowed=False, count=count - 1, limit=limit, reset_in=max(reset_in, 0.0)
        )

    async def close(self) -> None:
        if hasattr(self._redis, "aclose"):
            await self._redis.aclose()
        else:
            await self._redis.close()
