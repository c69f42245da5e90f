# src/cache/json_store.py — v3
"""JSON file-based cache store (CACHE_BACKEND=json).

One file per entry under CACHE_ROOT/<key_type>/, insights under
CACHE_ROOT/insights/. File names are the SHA-256 of the key so arbitrary
barcode strings are safe on disk. Read-modify-write bookkeeping makes it
suited to single-process development setups only.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from shelfscan.cache.base_cache_store import BaseCacheStore
from shelfscan.cache.models import CacheEntry, InsightsEntry
from shelfscan.core.models import IdentificationKey, KeyType

logger = logging.getLogger(__name__)

_INSIGHTS_DIR = "insights"

M = TypeVar("M", bound=BaseModel)


class JsonCacheStore(BaseCacheStore):
    """File-based cache store using JSON files."""

    def __init__(self, cache_root: Path | str) -> None:
        self._root = Path(cache_root).expanduser()
        for key_type in KeyType:
            (self._root / key_type.value).mkdir(parents=True, exist_ok=True)
        (self._root / _INSIGHTS_DIR).mkdir(parents=True, exist_ok=True)

    async def get(self, key: IdentificationKey) -> CacheEntry | None:
        return self._read(self._entry_path(key), CacheEntry)

    async def put(self, entry: CacheEntry) -> None:
        self._write(self._entry_path(entry.identification_key), entry)

    async def touch(self, key: IdentificationKey, now: datetime) -> CacheEntry | None:
        entry = await self.get(key)
        if entry is None:
            return None
        updated = entry.model_copy(
            update={"access_count": entry.access_count + 1, "last_accessed_at": now}
        )
        await self.put(updated)
        return updated

    async def delete(self, key: IdentificationKey) -> bool:
        return self._unlink(self._entry_path(key))

    async def delete_by_product_id(self, product_id: str) -> int:
        if not product_id:
            return 0
        removed = 0
        for path, entry in self._iter_entries():
            if entry.product_id == product_id:
                path.unlink(missing_ok=True)
                removed += 1
        if await self.delete_insights(product_id):
            removed += 1
        return removed

    async def purge_expired(self, now: datetime) -> int:
        removed = 0
        for path, entry in self._iter_entries():
            if entry.is_expired(now):
                path.unlink(missing_ok=True)
                removed += 1
        for path in sorted((self._root / _INSIGHTS_DIR).glob("*.json")):
            insights = self._read(path, InsightsEntry)
            if insights is not None and insights.is_expired(now):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    async def list_entries(self) -> list[CacheEntry]:
        return [entry for _, entry in self._iter_entries()]

    # --- Product insights ---

    async def get_insights(self, product_id: str) -> InsightsEntry | None:
        return self._read(self._insights_path(product_id), InsightsEntry)

    async def put_insights(self, entry: InsightsEntry) -> None:
        self._write(self._insights_path(entry.product_id), entry)

    async def touch_insights(self, product_id: str, now: datetime) -> InsightsEntry | None:
        entry = await self.get_insights(product_id)
        if entry is None:
            return None
        updated = entry.model_copy(
            update={"access_count": entry.access_count + 1, "last_accessed_at": now}
        )
        await self.put_insights(updated)
        return updated

    async def delete_insights(self, product_id: str) -> bool:
        return self._unlink(self._insights_path(product_id))

    # --- Files ---

    def _iter_entries(self) -> list[tuple[Path, CacheEntry]]:
        found: list[tuple[Path, CacheEntry]] = []
        for key_type in KeyType:
            for path in sorted((self._root / key_type.value).glob("*.json")):
                entry = self._read(path, CacheEntry)
                if entry is not None:
                    found.append((path, entry))
        return found

    @staticmethod
    def _read(path: Path, model: type[M]) -> M | None:
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning("Unreadable cache file %s: %s", path.name, e)
            return None

    @staticmethod
    def _write(path: Path, model: BaseModel) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(model.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _unlink(path: Path) -> bool:
        if not path.exists():
            return False
        path.unlink()
        return True

    def _entry_path(self, key: IdentificationKey) -> Path:
        return self._root / key.key_type.value / f"{_digest(key.value)}.json"

    def _insights_path(self, product_id: str) -> Path:
        return self._root / _INSIGHTS_DIR / f"{_digest(product_id)}.json"


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
