# src/cache/redis_store.py — v3
"""Redis-based cache store (CACHE_BACKEND=redis).

Requires 'redis' package: pip install redis.
Suitable for multi-instance deployments. Entries carry a native Redis
TTL matching expires_at, so expiry eviction is done by Redis itself;
secondary sets index entries by product id for invalidation.

Access bookkeeping runs in a WATCH/MULTI transaction: a concurrent write
to the same key aborts and replays the update, so no increment is lost.
The rewrite keeps the key's remaining TTL and a key that vanished is
left absent.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import ValidationError

from shelfscan.cache.base_cache_store import BaseCacheStore
from shelfscan.cache.models import CacheEntry, InsightsEntry
from shelfscan.core.models import IdentificationKey

logger = logging.getLogger(__name__)

_KEY_PREFIX = "shelfscan:cache:"
_INDEX_KEY = "shelfscan:cache:__index__"
_PRODUCT_INDEX_PREFIX = "shelfscan:cache:__product__:"
_INSIGHTS_PREFIX = "shelfscan:insights:"

M = TypeVar("M", CacheEntry, InsightsEntry)


def _ttl_seconds(expires_at: datetime) -> int:
    return max(1, math.ceil((expires_at - datetime.now(timezone.utc)).total_seconds()))


class RedisCacheStore(BaseCacheStore):
    """Redis-backed cache store for distributed deployments."""

    def __init__(self, redis_url: str) -> None:
        try:
            import redis
        except ImportError as e:
            raise ImportError(
                "redis package required: pip install redis"
            ) from e

        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    async def get(self, key: IdentificationKey) -> CacheEntry | None:
        return self._decode(self._client.get(_KEY_PREFIX + key.storage_key), key.storage_key, CacheEntry)

    async def put(self, entry: CacheEntry) -> None:
        storage_key = entry.identification_key.storage_key
        previous = await self.get(entry.identification_key)

        pipe = self._client.pipeline()
        pipe.set(_KEY_PREFIX + storage_key, entry.model_dump_json(), ex=_ttl_seconds(entry.expires_at))
        pipe.sadd(_INDEX_KEY, storage_key)
        if previous is not None and previous.product_id and previous.product_id != entry.product_id:
            pipe.srem(_PRODUCT_INDEX_PREFIX + previous.product_id, storage_key)
        if entry.product_id:
            pipe.sadd(_PRODUCT_INDEX_PREFIX + entry.product_id, storage_key)
        pipe.execute()

    async def touch(self, key: IdentificationKey, now: datetime) -> CacheEntry | None:
        return self._bump_access(_KEY_PREFIX + key.storage_key, key.storage_key, CacheEntry, now)

    async def delete(self, key: IdentificationKey) -> bool:
        entry = await self.get(key)
        removed = self._client.delete(_KEY_PREFIX + key.storage_key)
        self._client.srem(_INDEX_KEY, key.storage_key)
        if entry is not None and entry.product_id:
            self._client.srem(_PRODUCT_INDEX_PREFIX + entry.product_id, key.storage_key)
        return bool(removed)

    async def delete_by_product_id(self, product_id: str) -> int:
        if not product_id:
            return 0
        index_key = _PRODUCT_INDEX_PREFIX + product_id
        storage_keys = self._client.smembers(index_key)
        removed = 0
        for storage_key in storage_keys:
            removed += int(self._client.delete(_KEY_PREFIX + storage_key))
            self._client.srem(_INDEX_KEY, storage_key)
        self._client.delete(index_key)
        removed += int(self._client.delete(_INSIGHTS_PREFIX + product_id))
        return removed

    async def purge_expired(self, now: datetime) -> int:
        """Drop index members whose entries Redis already expired.

        Insights keys carry no index and are evicted by their native TTL.
        """
        removed = 0
        for storage_key in self._client.smembers(_INDEX_KEY):
            raw = self._client.get(_KEY_PREFIX + storage_key)
            entry = self._decode(raw, storage_key, CacheEntry)
            if entry is None or entry.is_expired(now):
                self._client.delete(_KEY_PREFIX + storage_key)
                self._client.srem(_INDEX_KEY, storage_key)
                if entry is not None and entry.product_id:
                    self._client.srem(_PRODUCT_INDEX_PREFIX + entry.product_id, storage_key)
                removed += 1
        return removed

    async def list_entries(self) -> list[CacheEntry]:
        entries: list[CacheEntry] = []
        for storage_key in self._client.smembers(_INDEX_KEY):
            entry = self._decode(self._client.get(_KEY_PREFIX + storage_key), storage_key, CacheEntry)
            if entry is not None:
                entries.append(entry)
        return entries

    # --- Product insights ---

    async def get_insights(self, product_id: str) -> InsightsEntry | None:
        return self._decode(self._client.get(_INSIGHTS_PREFIX + product_id), product_id, InsightsEntry)

    async def put_insights(self, entry: InsightsEntry) -> None:
        self._client.set(
            _INSIGHTS_PREFIX + entry.product_id,
            entry.model_dump_json(),
            ex=_ttl_seconds(entry.expires_at),
        )

    async def touch_insights(self, product_id: str, now: datetime) -> InsightsEntry | None:
        return self._bump_access(_INSIGHTS_PREFIX + product_id, product_id, InsightsEntry, now)

    async def delete_insights(self, product_id: str) -> bool:
        return bool(self._client.delete(_INSIGHTS_PREFIX + product_id))

    def close(self) -> None:
        """Close the Redis connection."""
        self._client.close()

    # --- Internals ---

    def _bump_access(self, redis_key: str, label: str, model: type[M], now: datetime) -> M | None:
        def _update(pipe: Any) -> M | None:
            entry = self._decode(pipe.get(redis_key), label, model)
            ttl_ms = pipe.pttl(redis_key)
            if entry is None or ttl_ms == -2:
                return None
            updated = entry.model_copy(
                update={"access_count": entry.access_count + 1, "last_accessed_at": now}
            )
            pipe.multi()
            if ttl_ms > 0:
                pipe.set(redis_key, updated.model_dump_json(), px=ttl_ms)
            else:
                pipe.set(redis_key, updated.model_dump_json(), xx=True, keepttl=True)
            return updated

        return self._client.transaction(_update, redis_key, value_from_callable=True)

    @staticmethod
    def _decode(raw: str | None, label: str, model: type[M]) -> M | None:
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Failed to deserialize cache entry %s: %s", label, e)
            return None
