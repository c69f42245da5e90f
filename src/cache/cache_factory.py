# src/cache/cache_factory.py — v3
"""Factory for cache store instantiation."""

from __future__ import annotations

from pathlib import Path

from shelfscan.cache.base_cache_store import BaseCacheStore
from shelfscan.config.settings import Settings


def create_cache_store(settings: Settings | None = None) -> BaseCacheStore:
    """Instantiate the configured cache backend.

    Args:
        settings: Application settings. Defaults to the SQLite backend
            under ./.shelfscan/cache.

    Returns:
        Configured BaseCacheStore implementation.
    """
    backend = "sqlite" if settings is None else settings.cache_backend
    cache_root = Path(".shelfscan/cache") if settings is None else settings.cache_root

    if backend == "sqlite":
        from shelfscan.cache.sqlite_store import SqliteCacheStore
        return SqliteCacheStore(db_path=Path(cache_root).expanduser() / "shelfscan_cache.db")

    if backend == "json":
        from shelfscan.cache.json_store import JsonCacheStore
        return JsonCacheStore(cache_root=cache_root)

    if backend == "redis":
        from shelfscan.cache.redis_store import RedisCacheStore
        if settings is None or not settings.cache_redis_url:
            raise ValueError(
                "CACHE_REDIS_URL must be set when CACHE_BACKEND=redis"
            )
        return RedisCacheStore(redis_url=settings.cache_redis_url)

    raise ValueError(f"Unsupported cache backend: {backend!r}")
