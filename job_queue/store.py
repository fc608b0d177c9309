"""
Queue Store — Durable primitives backing the email queue.

The queue needs three kinds of data structure:
  list        — FIFO of ready tasks and the dead-letter list (LPUSH / BRPOP)
  sorted set  — delayed retries scored by unix execute time (ZADD / ZRANGEBYSCORE / ZREM)
  string keys — dedupe and delivery markers with TTL and set-if-absent

Backends:
  RedisQueueStore     — production, redis.asyncio
  InMemoryQueueStore  — development and tests, single process, no persistence
"""
from __future__ import annotations

import asyncio
import time
import structlog
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Callable, Optional

from job_queue.errors import StoreUnavailableError

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueStore(ABC):
    """Abstract durable store interface."""

    @property
    @abstractmethod
    def available(self) -> bool:
        """True while the backend is connected and usable."""
        ...

    @abstractmethod
    async def connect(self):
        """Establish connection to the backend. Raises on failure."""
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    # ── Lists ─────────────────────────────────────────────────

    @abstractmethod
    async def lpush(self, key: str, value: str) -> int:
        """Prepend a value; returns the new list length."""
        ...

    @abstractmethod
    async def brpop(self, key: str, timeout: float) -> Optional[str]:
        """Pop from the tail, waiting up to `timeout` seconds. None on timeout."""
        ...

    @abstractmethod
    async def rpop(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def llen(self, key: str) -> int:
        ...

    @abstractmethod
    async def delete(self, key: str) -> int:
        ...

    # ── Sorted sets ───────────────────────────────────────────

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> int:
        ...

    @abstractmethod
    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: int = 100
    ) -> list[str]:
        """Members with min_score <= score <= max_score, lowest score first."""
        ...

    @abstractmethod
    async def zscore(self, key: str, member: str) -> Optional[float]:
        ...

    @abstractmethod
    async def zrem(self, key: str, member: str) -> int:
        """Remove a member; returns 1 if this call removed it, 0 otherwise."""
        ...

    @abstractmethod
    async def zcard(self, key: str) -> int:
        ...

    # ── String keys ───────────────────────────────────────────

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """Set a key with optional TTL. With nx, only when absent; returns False if not set."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    # ── Diagnostics ───────────────────────────────────────────

    async def persistence_status(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "aof_enabled": False,
            "rdb_enabled": False,
            "hybrid_enabled": False,
            "last_save": "",
        }


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisQueueStore(QueueStore):
    """Production store backed by Redis lists, sorted sets and TTL keys."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", max_connections: int = 20):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis = None

    @property
    def available(self) -> bool:
        return self._redis is not None

    async def connect(self):
        import redis.asyncio as aioredis
        client = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=self._max_connections,
        )
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._redis = client
        logger.info("redis_store_connected", url=self._redis_url)

    async def close(self):
        if self._redis is not None:
            client, self._redis = self._redis, None
            await client.aclose()

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    def _client(self):
        if self._redis is None:
            raise StoreUnavailableError("Redis is not connected")
        return self._redis

    async def lpush(self, key: str, value: str) -> int:
        return await self._client().lpush(key, value)

    async def brpop(self, key: str, timeout: float) -> Optional[str]:
        result = await self._client().brpop([key], timeout=timeout)
        if not result:
            return None
        _, value = result
        return value

    async def rpop(self, key: str) -> Optional[str]:
        return await self._client().rpop(key)

    async def llen(self, key: str) -> int:
        return await self._client().llen(key)

    async def delete(self, key: str) -> int:
        return await self._client().delete(key)

    async def zadd(self, key: str, member: str, score: float) -> int:
        return await self._client().zadd(key, {member: score})

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: int = 100
    ) -> list[str]:
        return await self._client().zrangebyscore(key, min_score, max_score, start=0, num=limit)

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return await self._client().zscore(key, member)

    async def zrem(self, key: str, member: str) -> int:
        return await self._client().zrem(key, member)

    async def zcard(self, key: str) -> int:
        return await self._client().zcard(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None, nx: bool = False) -> bool:
        result = await self._client().set(key, value, ex=ttl, nx=nx)
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        return await self._client().get(key)

    async def exists(self, key: str) -> bool:
        return await self._client().exists(key) > 0

    async def persistence_status(self) -> dict[str, Any]:
        status = await super().persistence_status()
        if self._redis is None:
            return status

        try:
            info = await self._redis.info("persistence")
        except Exception as e:
            logger.warning("redis_persistence_info_failed", error=str(e))
            return status

        status["aof_enabled"] = str(info.get("aof_enabled", 0)) == "1"
        status["rdb_enabled"] = "rdb_changes_since_last_save" in info
        last_save = info.get("rdb_last_save_time")
        if last_save:
            status["last_save"] = datetime.fromtimestamp(int(last_save)).strftime("%Y-%m-%d %H:%M:%S")

        try:
            hybrid = await self._redis.config_get("aof-use-rdb-preamble")
            status["hybrid_enabled"] = hybrid.get("aof-use-rdb-preamble") == "yes"
        except Exception as e:
            # CONFIG is commonly disabled on managed Redis
            logger.debug("redis_config_get_failed", error=str(e))

        return status


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueStore(QueueStore):
    """
    Development/test store backed by plain containers.
    Single-process only, no persistence. `clock` drives TTL expiry and
    `set_available(False)` simulates an outage.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lists: dict[str, deque[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._strings: dict[str, tuple[str, Optional[float]]] = {}
        self._cond = asyncio.Condition()
        self._connected = False
        self._healthy = True

    @property
    def available(self) -> bool:
        return self._connected and self._healthy

    def set_available(self, healthy: bool):
        self._healthy = healthy

    def _check(self):
        if not self._healthy:
            raise StoreUnavailableError("in-memory store marked unavailable")

    async def connect(self):
        self._check()
        self._connected = True
        logger.info("inmemory_store_connected")

    async def close(self):
        self._connected = False

    async def ping(self) -> bool:
        return self.available

    # ── Lists ─────────────────────────────────────────────────

    async def lpush(self, key: str, value: str) -> int:
        self._check()
        async with self._cond:
            items = self._lists.setdefault(key, deque())
            items.appendleft(value)
            self._cond.notify_all()
            return len(items)

    async def brpop(self, key: str, timeout: float) -> Optional[str]:
        self._check()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with self._cond:
            while not self._lists.get(key):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    return None
                self._check()
            return self._lists[key].pop()

    async def rpop(self, key: str) -> Optional[str]:
        self._check()
        items = self._lists.get(key)
        if not items:
            return None
        return items.pop()

    async def llen(self, key: str) -> int:
        self._check()
        return len(self._lists.get(key, ()))

    async def delete(self, key: str) -> int:
        self._check()
        removed = 0
        for container in (self._lists, self._zsets, self._strings):
            if key in container:
                del container[key]
                removed = 1
        return removed

    def list_items(self, key: str) -> list[str]:
        """Snapshot of a list, head first (test helper)."""
        return list(self._lists.get(key, ()))

    # ── Sorted sets ───────────────────────────────────────────

    async def zadd(self, key: str, member: str, score: float) -> int:
        self._check()
        zset = self._zsets.setdefault(key, {})
        added = 0 if member in zset else 1
        zset[member] = float(score)
        return added

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: int = 100
    ) -> list[str]:
        self._check()
        zset = self._zsets.get(key, {})
        matching = sorted(
            (score, member) for member, score in zset.items()
            if min_score <= score <= max_score
        )
        return [member for _, member in matching[:limit]]

    async def zscore(self, key: str, member: str) -> Optional[float]:
        self._check()
        return self._zsets.get(key, {}).get(member)

    async def zrem(self, key: str, member: str) -> int:
        self._check()
        zset = self._zsets.get(key)
        if not zset or member not in zset:
            return 0
        del zset[member]
        return 1

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self._zsets.get(key, {}))

    # ── String keys ───────────────────────────────────────────

    def _live(self, key: str) -> Optional[str]:
        entry = self._strings.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._strings[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None, nx: bool = False) -> bool:
        self._check()
        if nx and self._live(key) is not None:
            return False
        expires_at = self._clock() + ttl if ttl else None
        self._strings[key] = (value, expires_at)
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self._live(key)

    async def exists(self, key: str) -> bool:
        self._check()
        return self._live(key) is not None or key in self._lists or key in self._zsets


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_queue_store(redis_config=None) -> Optional[QueueStore]:
    """
    Factory: build the store for a RedisConfig.

    Returns None when Redis is disabled; the queue then runs in
    synchronous-send mode.
    """
    if redis_config is None:
        return InMemoryQueueStore()
    if not redis_config.enabled:
        logger.warning("redis_disabled_sync_mode")
        return None
    if redis_config.url.startswith("memory://"):
        return InMemoryQueueStore()
    return RedisQueueStore(
        redis_url=redis_config.url,
        max_connections=redis_config.pool_size,
    )
