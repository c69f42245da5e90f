# src/cache/service.py — v2
"""Document cache service: TTL policy and best-effort access over a backend.

The cache is an optimization, not a system of record. Every operation is
retried on transient errors, then failures are logged and returned as a
Failed outcome instead of being raised.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, TypeVar

from shelfscan.cache.base_cache_store import BaseCacheStore
from shelfscan.cache.models import CacheEntry, CacheLookupResult, CacheStats, InsightsEntry
from shelfscan.core.models import (
    IdentificationKey,
    KeyType,
    ProductInsights,
    ProductSnapshot,
    utcnow,
)
from shelfscan.core.outcome import Failed, Ok, Outcome
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_DAYS = 90
ANALYSIS_TTL_DAYS = 30
INSIGHTS_TTL_DAYS = 30

# Registry and discovery answers (tiers 1, 3) live longer than fresh analyses (2, 4).
LONG_LIVED_TIERS = frozenset({1, 3})


def ttl_days_for_tier(
    tier: int, long_lived_days: int = DEFAULT_TTL_DAYS, analysis_days: int = ANALYSIS_TTL_DAYS
) -> int:
    return long_lived_days if tier in LONG_LIVED_TIERS else analysis_days


class DocumentCache:
    """TTL-keyed product cache with access bookkeeping."""

    def __init__(
        self,
        store: BaseCacheStore,
        default_ttl_days: int = DEFAULT_TTL_DAYS,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store = store
        self._default_ttl_days = default_ttl_days
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    @property
    def backend(self) -> BaseCacheStore:
        return self._store

    async def lookup(self, key: IdentificationKey) -> Outcome[CacheLookupResult]:
        """Return a hit only for a non-expired entry, bumping its access counters."""

        async def _lookup() -> CacheLookupResult:
            now = self._clock()
            entry = await self._store.get(key)
            if entry is None:
                return CacheLookupResult()
            if entry.is_expired(now):
                logger.debug("Cache entry %s expired at %s", key, entry.expires_at)
                return CacheLookupResult()
            touched = await self._store.touch(key, now)
            return CacheLookupResult(hit=True, entry=touched or entry)

        return await self._best_effort(_lookup, f"cache.lookup({key})")

    async def store(
        self,
        key: IdentificationKey,
        snapshot: ProductSnapshot,
        tier: int,
        confidence: float,
        ttl_days: int | None = None,
    ) -> Outcome[CacheEntry]:
        """Upsert the entry for `key`, resetting its expiry.

        access_count and created_at carry over from an existing entry so
        popularity survives refreshes.
        """

        async def _store() -> CacheEntry:
            now = self._clock()
            existing = await self._store.get(key)
            entry = CacheEntry(
                key=key.value,
                key_type=key.key_type,
                product_snapshot=snapshot,
                tier_produced=tier,
                confidence=max(0.0, min(1.0, confidence)),
                created_at=existing.created_at if existing is not None else now,
                last_accessed_at=now,
                access_count=existing.access_count if existing is not None else 0,
                expires_at=now + timedelta(days=ttl_days or self._default_ttl_days),
            )
            await self._store.put(entry)
            return entry

        return await self._best_effort(_store, f"cache.store({key})")

    async def invalidate(self, key: IdentificationKey) -> Outcome[bool]:
        return await self._best_effort(
            lambda: self._store.delete(key), f"cache.invalidate({key})"
        )

    async def invalidate_by_product_id(self, product_id: str) -> Outcome[int]:
        """Remove every entry, of any key type, referencing `product_id`, and its insights."""
        return await self._best_effort(
            lambda: self._store.delete_by_product_id(product_id),
            f"cache.invalidate_by_product_id({product_id})",
        )

    # --- Product insights ---

    async def lookup_insights(self, product_id: str) -> Outcome[InsightsEntry | None]:
        """Non-expired insights for `product_id`, with access bookkeeping; None on a miss."""

        async def _lookup() -> InsightsEntry | None:
            now = self._clock()
            entry = await self._store.get_insights(product_id)
            if entry is None or entry.is_expired(now):
                return None
            touched = await self._store.touch_insights(product_id, now)
            return touched or entry

        return await self._best_effort(_lookup, f"cache.lookup_insights({product_id})")

    async def store_insights(
        self, insights: ProductInsights, ttl_days: int = INSIGHTS_TTL_DAYS
    ) -> Outcome[InsightsEntry]:
        """Upsert the insights of one product with a fresh expiry and zero access count."""

        async def _store() -> InsightsEntry:
            now = self._clock()
            entry = InsightsEntry(
                product_id=insights.product_id,
                insights=insights.model_copy(update={"cached": False}),
                created_at=now,
                last_accessed_at=now,
                expires_at=now + timedelta(days=ttl_days),
            )
            await self._store.put_insights(entry)
            return entry

        return await self._best_effort(_store, f"cache.store_insights({insights.product_id})")

    async def invalidate_insights(self, product_ids: Iterable[str]) -> Outcome[int]:
        """Remove the insights of each listed product; returns how many existed."""
        ids = [p for p in product_ids if p]

        async def _invalidate() -> int:
            removed = 0
            for product_id in ids:
                removed += int(await self._store.delete_insights(product_id))
            return removed

        return await self._best_effort(_invalidate, f"cache.invalidate_insights({len(ids)} products)")

    async def evict_expired(self) -> Outcome[int]:
        """Physically remove expired entries."""
        return await self._best_effort(
            lambda: self._store.purge_expired(self._clock()), "cache.evict_expired"
        )

    async def stats(self) -> Outcome[CacheStats]:
        async def _stats() -> CacheStats:
            entries = await self._store.list_entries()
            if not entries:
                return CacheStats()
            now = self._clock()
            created = [e.created_at for e in entries]
            return CacheStats(
                total_entries=len(entries),
                barcode_entries=sum(1 for e in entries if e.key_type is KeyType.BARCODE),
                image_fingerprint_entries=sum(
                    1 for e in entries if e.key_type is KeyType.IMAGE_FINGERPRINT
                ),
                expired_entries=sum(1 for e in entries if e.is_expired(now)),
                avg_access_count=sum(e.access_count for e in entries) / len(entries),
                oldest_entry=min(created),
                newest_entry=max(created),
            )

        return await self._best_effort(_stats, "cache.stats")

    async def _best_effort(
        self, operation: Callable[[], Awaitable[T]], label: str
    ) -> Outcome[T]:
        try:
            value = await with_retry(
                operation,
                self._retry.max_attempts,
                self._retry.base_delay_s,
                label=label,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.warning("%s failed, continuing without cache: %s", label, exc)
            return Failed(exc)
        return Ok(value)
