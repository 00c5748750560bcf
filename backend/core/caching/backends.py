"""
Storage backends for the caches.

Two implementations of one async interface:
- RedisBackend: shared, durable, cross-instance (redis.asyncio)
- MemoryBackend: per-process bounded LRU map with TTL and eviction listeners

Callers only see CacheBackendError; the caches catch it and degrade to a miss
(reads) or a dropped write.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

EvictionListener = Callable[[str, Any], None]


class CacheError(Exception):
    """Base class for cache-layer errors."""


class CacheBackendError(CacheError):
    """A storage call failed or timed out."""


def _as_str(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class CacheBackend(ABC):
    """Key/value + set + list operations the caches need."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        ...

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int = 0) -> int:
        """Atomic increment; TTL refreshed on every call."""

    @abstractmethod
    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        """Add to a set; TTL refreshed on every add."""

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        ...

    @abstractmethod
    async def sunion(self, keys: list[str]) -> list[str]:
        ...

    @abstractmethod
    async def scard(self, key: str) -> int:
        ...

    @abstractmethod
    async def spop(self, key: str, count: int) -> list[str]:
        """Remove and return up to `count` random members."""

    @abstractmethod
    async def lpush_capped(self, key: str, value: str, limit: int, ttl_seconds: int = 0) -> None:
        """Push to the head of a list and trim it to `limit` items."""

    @abstractmethod
    async def lrange(self, key: str, limit: int) -> list[str]:
        """First `limit` items, newest first."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        return None

    def count(self, prefix: str) -> Optional[int]:
        """Live key count under prefix, where cheaply known."""
        return None


# =============================================================================
# Redis
# =============================================================================

def create_redis_client(
    redis_url: str,
    socket_timeout: float = 2.0,
    connect_timeout: float = 2.0,
    retries: int = 2,
) -> aioredis.Redis:
    """
    Build an asyncio Redis client with per-operation timeouts and retries.

    Each command is retried independently with exponential backoff; no
    command holds a process-wide lock for its round-trip.
    """
    return aioredis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=connect_timeout,
        retry=Retry(ExponentialBackoff(cap=1.0, base=0.05), retries),
        retry_on_timeout=True,
    )


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, asyncio.TimeoutError, OSError) as e:
        raise CacheBackendError(f"redis {operation} failed: {e}") from e


class RedisBackend(CacheBackend):
    """
    Redis-backed storage.

    Usage:
        client = create_redis_client("redis://localhost:6379/0")
        backend = RedisBackend(client)
    """

    name = "redis"

    def __init__(self, client: aioredis.Redis, scan_batch: int = 500):
        self.client = client
        self.scan_batch = scan_batch

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return _as_str(await self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        with _translate_errors("set"):
            if ttl_seconds > 0:
                await self.client.set(key, value, ex=ttl_seconds)
            else:
                await self.client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors("delete"):
            return int(await self.client.delete(*keys))

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        if not keys:
            return []
        with _translate_errors("mget"):
            raws = await self.client.mget(keys)
        return [_as_str(raw) for raw in raws]

    async def incr(self, key: str, ttl_seconds: int = 0) -> int:
        with _translate_errors("incr"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                if ttl_seconds > 0:
                    pipe.expire(key, ttl_seconds)
                results = await pipe.execute()
        return int(results[0])

    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        with _translate_errors("sadd"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.sadd(key, member)
                if ttl_seconds > 0:
                    pipe.expire(key, ttl_seconds)
                await pipe.execute()

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("srem"):
            return int(await self.client.srem(key, *members))

    async def sunion(self, keys: list[str]) -> list[str]:
        if not keys:
            return []
        with _translate_errors("sunion"):
            members = await self.client.sunion(keys)
        return [_as_str(m) for m in members]

    async def scard(self, key: str) -> int:
        with _translate_errors("scard"):
            return int(await self.client.scard(key))

    async def spop(self, key: str, count: int) -> list[str]:
        if count <= 0:
            return []
        with _translate_errors("spop"):
            popped = await self.client.spop(key, count)
        if not popped:
            return []
        if isinstance(popped, (str, bytes)):
            popped = [popped]
        return [_as_str(m) for m in popped]

    async def lpush_capped(self, key: str, value: str, limit: int, ttl_seconds: int = 0) -> None:
        with _translate_errors("lpush"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lpush(key, value)
                pipe.ltrim(key, 0, limit - 1)
                if ttl_seconds > 0:
                    pipe.expire(key, ttl_seconds)
                await pipe.execute()

    async def lrange(self, key: str, limit: int) -> list[str]:
        with _translate_errors("lrange"):
            raws = await self.client.lrange(key, 0, limit - 1)
        return [_as_str(raw) for raw in raws or []]

    async def delete_prefix(self, prefix: str) -> int:
        # SCAN, not KEYS/FLUSHDB: the Redis may be shared with other services
        removed = 0
        batch: list[str] = []
        with _translate_errors("delete_prefix"):
            async for key in self.client.scan_iter(match=f"{prefix}*", count=self.scan_batch):
                batch.append(_as_str(key))
                if len(batch) >= self.scan_batch:
                    removed += int(await self.client.delete(*batch))
                    batch = []
            if batch:
                removed += int(await self.client.delete(*batch))
        return removed

    async def ping(self) -> bool:
        with _translate_errors("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        with _translate_errors("close"):
            await self.client.aclose()


# =============================================================================
# In-process fallback
# =============================================================================

@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None


class MemoryBackend(CacheBackend):
    """
    Bounded in-process store used when no Redis is configured.

    Scalar and list values live in an LRU map capped at `max_items`; sets live
    beside it, uncapped. Counters from `incr` have their own LRU of the same
    capacity, so bumping a counter never evicts a record. Whenever a map entry leaves - capacity eviction, TTL
    expiry, delete - every eviction listener is called with (key, value) so
    owners can drop dependent data (the response cache unlinks bucket
    membership this way).

    No cross-instance sharing, no durability.
    """

    name = "memory"

    def __init__(
        self,
        max_items: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_items = max_items
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._sets: dict[str, _Entry] = {}
        self._counters: "OrderedDict[str, _Entry]" = OrderedDict()
        self._listeners: list[EvictionListener] = []

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        self._listeners.append(listener)

    # -- internals -----------------------------------------------------------

    def _expiry(self, ttl_seconds: int) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds > 0 else None

    def _expired(self, entry: _Entry) -> bool:
        return entry.expires_at is not None and self._clock() >= entry.expires_at

    def _notify(self, key: str, value: Any) -> None:
        for listener in self._listeners:
            try:
                listener(key, value)
            except Exception as e:
                logger.warning(f"Eviction listener failed for key={key}: {e}")

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._notify(key, entry.value)
        return True

    def _live(self, key: str, touch: bool = True) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            self._remove(key)
            return None
        if touch:
            self._entries.move_to_end(key)
        return entry

    def _live_set(self, key: str) -> Optional[dict]:
        entry = self._sets.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            del self._sets[key]
            return None
        return entry.value

    def _store(self, key: str, value: Any, ttl_seconds: int) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = _Entry(value, self._expiry(ttl_seconds))
        while len(self._entries) > self.max_items:
            old_key, old_entry = self._entries.popitem(last=False)
            self._notify(old_key, old_entry.value)

    def purge_expired(self) -> int:
        """Drop every expired entry now (normally this happens lazily)."""
        expired = [k for k, e in self._entries.items() if self._expired(e)]
        for key in expired:
            self._remove(key)
        for key in [k for k, e in self._sets.items() if self._expired(e)]:
            del self._sets[key]
        for key in [k for k, e in self._counters.items() if self._expired(e)]:
            del self._counters[key]
        return len(expired)

    def discard(self, key: str, *members: str) -> int:
        """Synchronous set removal, safe to call from eviction listeners."""
        members_set = self._live_set(key)
        if members_set is None:
            return 0
        removed = 0
        for member in members:
            if member in members_set:
                del members_set[member]
                removed += 1
        if not members_set:
            del self._sets[key]
        return removed

    # -- interface -----------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        if entry is not None:
            return entry.value
        counter = self._counters.get(key)
        if counter is None or self._expired(counter):
            return None
        return str(counter.value)

    async def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        self._store(key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._remove(key):
                removed += 1
            elif self._sets.pop(key, None) is not None:
                removed += 1
            elif self._counters.pop(key, None) is not None:
                removed += 1
        return removed

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        results = []
        for key in keys:
            entry = self._live(key)
            results.append(entry.value if entry else None)
        return results

    async def incr(self, key: str, ttl_seconds: int = 0) -> int:
        entry = self._counters.pop(key, None)
        value = entry.value + 1 if entry and not self._expired(entry) else 1
        self._counters[key] = _Entry(value, self._expiry(ttl_seconds))
        while len(self._counters) > self.max_items:
            self._counters.popitem(last=False)
        return value

    async def sadd(self, key: str, member: str, ttl_seconds: int = 0) -> None:
        members = self._live_set(key)
        if members is None:
            members = {}
        members[member] = None
        self._sets[key] = _Entry(members, self._expiry(ttl_seconds))

    async def srem(self, key: str, *members: str) -> int:
        return self.discard(key, *members)

    async def sunion(self, keys: list[str]) -> list[str]:
        union: dict[str, None] = {}
        for key in keys:
            members = self._live_set(key)
            if members:
                union.update(members)
        return list(union)

    async def scard(self, key: str) -> int:
        members = self._live_set(key)
        return len(members) if members else 0

    async def spop(self, key: str, count: int) -> list[str]:
        members = self._live_set(key)
        if not members or count <= 0:
            return []
        popped = random.sample(list(members), min(count, len(members)))
        self.discard(key, *popped)
        return popped

    async def lpush_capped(self, key: str, value: str, limit: int, ttl_seconds: int = 0) -> None:
        entry = self._live(key)
        items = list(entry.value) if entry else []
        items.insert(0, value)
        self._store(key, items[:limit], ttl_seconds)

    async def lrange(self, key: str, limit: int) -> list[str]:
        entry = self._live(key)
        return list(entry.value[:limit]) if entry else []

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        set_keys = [k for k in self._sets if k.startswith(prefix)]
        counter_keys = [k for k in self._counters if k.startswith(prefix)]
        for key in keys:
            self._remove(key)
        for key in set_keys:
            # listeners above may already have emptied and dropped the set
            self._sets.pop(key, None)
        for key in counter_keys:
            del self._counters[key]
        return len(keys) + len(set_keys) + len(counter_keys)

    async def ping(self) -> bool:
        return True

    def count(self, prefix: str) -> Optional[int]:
        self.purge_expired()
        return sum(1 for k in self._entries if k.startswith(prefix))
