"""Two-tier key/value store: Redis when reachable, process memory otherwise.

Keys are namespaced as ``<namespace>:<key>``. Values are opaque strings; the
named caches own encoding. No operation raises: a failed ``set`` returns
False and a failed ``get`` behaves like a miss.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

T = TypeVar("T")

TIER_REDIS = "redis"
TIER_MEMORY = "memory"

_REDIS_ERRORS = (aioredis.RedisError, OSError, asyncio.TimeoutError)


@dataclass
class _MemoryEntry:
    value: str
    expires_at: float | None


class MemoryStore:
    """In-process fallback tier.

    Expired entries go on read, and a write sweeps the whole map at most
    once per ``prune_interval`` seconds so keys nobody reads again do not
    pile up during a long outage.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, prune_interval: float = 60.0) -> None:
        self._data: dict[str, _MemoryEntry] = {}
        self._clock = clock
        self._prune_interval = prune_interval
        self._last_prune = clock()

    def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry.value

    def set(self, key: str, value: str, ttl: int | None) -> None:
        if self._clock() - self._last_prune >= self._prune_interval:
            self.prune()
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = _MemoryEntry(value, expires_at)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def clear_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._data if k.startswith(prefix)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def clear(self) -> None:
        self._data.clear()

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._last_prune = self._clock()
        expired = [k for k, e in self._data.items() if e.expires_at is not None and e.expires_at <= now]
        for k in expired:
            del self._data[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class CacheSubstrate:
    """Namespaced TTL store shared by every named cache."""

    def __init__(
        self,
        redis_client: aioredis.Redis | None,
        *,
        io_timeout: float = 5.0,
        probe_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._redis = redis_client
        self._io_timeout = io_timeout
        self._probe_interval = probe_interval
        self._clock = clock
        self._memory = MemoryStore(clock)
        self._healthy = False
        self._last_probe = float("-inf")
        self.hits = 0
        self.misses = 0

    @property
    def tier(self) -> str:
        """Which tier currently serves reads and writes."""
        return TIER_REDIS if self._healthy else TIER_MEMORY

    @property
    def redis(self) -> aioredis.Redis | None:
        return self._redis

    @staticmethod
    def make_key(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    async def connect(self, ready_timeout: float = 10.0, retry_interval: float = 0.5) -> bool:
        """Ping Redis until it answers or the ready deadline passes."""
        if self._redis is None:
            logger.info("cache_memory_only", reason="no cache URL configured")
            return False

        deadline = self._clock() + ready_timeout
        while True:
            if await self._probe():
                return True
            if self._clock() + retry_interval > deadline:
                logger.warning("cache_redis_unavailable", ready_timeout=ready_timeout, tier=TIER_MEMORY)
                return False
            await asyncio.sleep(retry_interval)

    async def _probe(self) -> bool:
        self._last_probe = self._clock()
        if self._redis is None:
            return False
        try:
            await asyncio.wait_for(self._redis.ping(), self._io_timeout)
        except _REDIS_ERRORS:
            return False
        if not self._healthy:
            # Values written while degraded never reached Redis; dropping them
            # keeps a later outage from resurrecting stale entries.
            self._memory.clear()
            self._healthy = True
            logger.info("cache_tier_changed", tier=TIER_REDIS)
        return True

    def _degrade(self, op: str, exc: BaseException) -> None:
        if self._healthy:
            logger.warning("cache_tier_changed", tier=TIER_MEMORY, op=op, error=str(exc))
        self._healthy = False

    async def _maybe_recover(self) -> None:
        if self._healthy or self._redis is None:
            return
        if self._clock() - self._last_probe >= self._probe_interval:
            await self._probe()

    async def _remote(self, op: str, call: Callable[[], Awaitable[T]]) -> tuple[bool, T | None]:
        """Run one Redis call under the I/O timeout. Returns (ok, result)."""
        await self._maybe_recover()
        if not self._healthy or self._redis is None:
            return False, None
        try:
            return True, await asyncio.wait_for(call(), self._io_timeout)
        except _REDIS_ERRORS as exc:
            self._degrade(op, exc)
            return False, None

    async def get(self, namespace: str, key: str) -> str | None:
        full_key = self.make_key(namespace, key)
        ok, value = await self._remote("get", lambda: self._redis.get(full_key))  # type: ignore[union-attr]
        if not ok:
            value = self._memory.get(full_key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    async def set(self, namespace: str, key: str, value: str, ttl: int | None = None) -> bool:
        full_key = self.make_key(namespace, key)
        if ttl is not None and ttl <= 0:
            ttl = None
        ok, _ = await self._remote("set", lambda: self._redis.set(full_key, value, ex=ttl))  # type: ignore[union-attr]
        if ok:
            return True
        try:
            self._memory.set(full_key, value, ttl)
        except Exception:
            logger.warning("cache_memory_set_failed", key=full_key, exc_info=True)
            return False
        return True

    async def add(self, namespace: str, key: str, value: str, ttl: int | None = None) -> bool:
        """Set only if absent. True when this caller created the entry."""
        full_key = self.make_key(namespace, key)
        ok, created = await self._remote(
            "add", lambda: self._redis.set(full_key, value, ex=ttl or None, nx=True)  # type: ignore[union-attr]
        )
        if ok:
            return bool(created)
        if self._memory.get(full_key) is not None:
            return False
        self._memory.set(full_key, value, ttl)
        return True

    async def delete(self, namespace: str, key: str) -> bool:
        full_key = self.make_key(namespace, key)
        ok, removed = await self._remote("delete", lambda: self._redis.delete(full_key))  # type: ignore[union-attr]
        local = self._memory.delete(full_key)
        return (ok and bool(removed)) or local

    async def clear(self, namespace: str) -> int:
        """Remove every key in the namespace from both tiers."""
        prefix = self.make_key(namespace, "")

        async def _scan_and_delete() -> int:
            keys = [k async for k in self._redis.scan_iter(match=f"{prefix}*", count=500)]  # type: ignore[union-attr]
            removed = 0
            for i in range(0, len(keys), 500):
                removed += await self._redis.delete(*keys[i : i + 500])  # type: ignore[union-attr]
            return removed

        _, remote_removed = await self._remote("clear", _scan_and_delete)
        local_removed = self._memory.clear_prefix(prefix)
        return (remote_removed or 0) + local_removed

    def stats(self) -> dict[str, Any]:
        self._memory.prune()
        return {
            "tier": self.tier,
            "memory_entries": len(self._memory),
            "hits": self.hits,
            "misses": self.misses,
        }
