# src/cache/base_cache_store.py — v3
"""Abstract cache store interface.

Backends are raw: they raise on I/O failure and return expired entries
as stored. Expiry policy, retries and error swallowing belong to
cache/service.py.

Two keyspaces share a backend: identification entries keyed by
(key, key_type), and product insights keyed by product id. Removing a
product's entries removes its insights with them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from shelfscan.cache.models import CacheEntry, InsightsEntry
from shelfscan.core.models import IdentificationKey


class BaseCacheStore(ABC):
    """Unified interface for cache storage backends."""

    @abstractmethod
    async def get(self, key: IdentificationKey) -> CacheEntry | None:
        """Retrieve the entry stored under `key`, expired or not."""

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Insert or replace the entry for `(entry.key, entry.key_type)`."""

    @abstractmethod
    async def touch(self, key: IdentificationKey, now: datetime) -> CacheEntry | None:
        """Atomically increment access_count and set last_accessed_at.

        Returns the updated entry, or None when the key is absent. An absent
        key is never recreated.
        """

    @abstractmethod
    async def delete(self, key: IdentificationKey) -> bool:
        """Remove one entry. Returns True if something was deleted."""

    @abstractmethod
    async def delete_by_product_id(self, product_id: str) -> int:
        """Remove every entry whose snapshot references `product_id`, and its insights.

        Returns the number of records removed, insights included.
        """

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        """Physically remove entries and insights with expires_at <= now."""

    @abstractmethod
    async def list_entries(self) -> list[CacheEntry]:
        """List all stored identification entries (for stats)."""

    # --- Product insights ---

    @abstractmethod
    async def get_insights(self, product_id: str) -> InsightsEntry | None:
        """Retrieve the insights stored for `product_id`, expired or not."""

    @abstractmethod
    async def put_insights(self, entry: InsightsEntry) -> None:
        """Insert or replace the insights for `entry.product_id`."""

    @abstractmethod
    async def touch_insights(self, product_id: str, now: datetime) -> InsightsEntry | None:
        """Same contract as `touch`, for insights."""

    @abstractmethod
    async def delete_insights(self, product_id: str) -> bool:
        """Remove the insights for one product."""

    def close(self) -> None:
        """Release backend resources."""
