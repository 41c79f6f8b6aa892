"""
Short-TTL activity cache for the on-demand source, plus the auto-sync throttle.

Both sit on an injected CacheStore (in-process memory by default, Redis when REDIS_URL is set).
Keys are "{prefix}{user}" or "{prefix}{user}_{suffix}"; values are JSON {"activities", "timestamp"}.
The cache is an optimization only: store errors and unreadable entries are logged and read as a miss.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

from pydantic import ValidationError

from fitclub.config import Settings
from fitclub.schemas.activity import CachedActivities, NormalizedActivity

logger = logging.getLogger(__name__)

RECENT_SHAPE = "recent"


class CacheStoreError(Exception):
    """Backend failure in a CacheStore (connection refused, timeout, ...)."""


class CacheStore(ABC):
    """Async string key-value store with prefix enumeration."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, expire_seconds: int | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]: ...


class MemoryCacheStore(CacheStore):
    """Per-process store; contents are lost on restart, like the browser session it replaces."""

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]


class RedisCacheStore(CacheStore):
    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        from redis.asyncio import from_url

        return cls(from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> str | None:
        from redis.exceptions import RedisError

        try:
            return await self._client.get(key)
        except RedisError as e:
            raise CacheStoreError(str(e)) from e

    async def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        from redis.exceptions import RedisError

        try:
            await self._client.set(key, value, ex=expire_seconds)
        except RedisError as e:
            raise CacheStoreError(str(e)) from e

    async def delete(self, key: str) -> None:
        from redis.exceptions import RedisError

        try:
            await self._client.delete(key)
        except RedisError as e:
            raise CacheStoreError(str(e)) from e

    async def keys(self, prefix: str) -> list[str]:
        from redis.exceptions import RedisError

        try:
            return [k async for k in self._client.scan_iter(match=f"{prefix}*")]
        except RedisError as e:
            raise CacheStoreError(str(e)) from e

    async def close(self) -> None:
        await self._client.aclose()


def build_cache_store(config: Settings) -> CacheStore:
    if config.redis_url:
        return RedisCacheStore.from_url(config.redis_url)
    return MemoryCacheStore()


class ActivityCache:
    def __init__(
        self,
        store: CacheStore,
        *,
        ttl_seconds: int = 300,
        prefix: str = "strava_cache_",
        clock=time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._clock = clock

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def cache_key(self, user: int | str, suffix: str = "") -> str:
        return f"{self.prefix}{user}{'_' + suffix if suffix else ''}"

    @staticmethod
    def query_shape(after: int | None = None, before: int | None = None) -> str:
        """'recent' for the unscoped query, otherwise a key encoding the bounds."""
        if after is None and before is None:
            return RECENT_SHAPE
        return f"range_{after if after is not None else 'start'}_{before if before is not None else 'now'}"

    async def get(self, user: int | str, shape: str = RECENT_SHAPE) -> CachedActivities | None:
        key = self.cache_key(user, shape)
        try:
            raw = await self.store.get(key)
        except CacheStoreError as e:
            logger.warning("Cache read error for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            cached = CachedActivities.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e)
            await self._evict(key)
            return None
        if self._now_ms() - cached.timestamp > self.ttl_seconds * 1000:
            logger.debug("Cache expired for: %s", key)
            await self._evict(key)
            return None
        logger.debug("Using cached data for: %s", key)
        return cached

    async def set(self, user: int | str, shape: str, activities: list[NormalizedActivity]) -> None:
        key = self.cache_key(user, shape)
        value = CachedActivities(activities=activities, timestamp=self._now_ms()).model_dump_json()
        try:
            # Backend expiry is a grace period for cleanup; the read path enforces the TTL
            await self.store.set(key, value, expire_seconds=self.ttl_seconds + 60)
        except CacheStoreError as e:
            logger.warning("Cache write error for %s: %s", key, e)
            return
        logger.debug("Cached %s activities for: %s", len(activities), key)

    async def clear(self, user: int | str) -> int:
        """Delete every entry for the user. Returns number of keys removed."""
        base = self.cache_key(user)
        try:
            keys = [k for k in await self.store.keys(base) if k == base or k.startswith(base + "_")]
            for k in keys:
                await self.store.delete(k)
        except CacheStoreError as e:
            logger.warning("Cache clear error for %s: %s", base, e)
            return 0
        logger.info("Cleared %s cache entries for user %s", len(keys), user)
        return len(keys)

    async def _evict(self, key: str) -> None:
        try:
            await self.store.delete(key)
        except CacheStoreError as e:
            logger.warning("Cache evict error for %s: %s", key, e)


class SyncThrottle:
    """Per-user "last sync" timestamp so page loads auto-sync at most once per interval."""

    def __init__(self, store: CacheStore, *, interval_seconds: int = 300, prefix: str = "last_strava_sync_", clock=time.time):
        self.store = store
        self.interval_seconds = interval_seconds
        self.prefix = prefix
        self._clock = clock

    async def due(self, user: int | str) -> bool:
        try:
            raw = await self.store.get(f"{self.prefix}{user}")
        except CacheStoreError as e:
            logger.warning("Sync throttle read error for %s: %s", user, e)
            return True
        if raw is None:
            return True
        try:
            last = float(raw)
        except ValueError:
            return True
        return self._clock() - last > self.interval_seconds

    async def mark(self, user: int | str) -> None:
        try:
            await self.store.set(f"{self.prefix}{user}", str(self._clock()))
        except CacheStoreError as e:
            logger.warning("Sync throttle write error for %s: %s", user, e)

    async def reset(self, user: int | str) -> None:
        try:
            await self.store.delete(f"{self.prefix}{user}")
        except CacheStoreError as e:
            logger.warning("Sync throttle reset error for %s: %s", user, e)
