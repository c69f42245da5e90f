# src/cache/sqlite_store.py — v3
"""SQLite-based cache store (CACHE_BACKEND=sqlite, the default).

Uses stdlib sqlite3, no external dependency. Timestamps are stored as
epoch seconds so expiry comparisons stay in SQL; access bookkeeping is a
single UPDATE so concurrent hits never lose an increment.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from shelfscan.cache.base_cache_store import BaseCacheStore
from shelfscan.cache.models import CacheEntry, InsightsEntry
from shelfscan.core.models import IdentificationKey, KeyType, ProductInsights, ProductSnapshot

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT NOT NULL,
    key_type TEXT NOT NULL,
    product_id TEXT NOT NULL DEFAULT '',
    snapshot TEXT NOT NULL,
    tier_produced INTEGER NOT NULL,
    confidence REAL NOT NULL,
    created_at REAL NOT NULL,
    last_accessed_at REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    expires_at REAL NOT NULL,
    PRIMARY KEY (key, key_type)
);
CREATE INDEX IF NOT EXISTS idx_cache_product_id ON cache_entries(product_id);
CREATE INDEX IF NOT EXISTS idx_cache_expires_at ON cache_entries(expires_at);

CREATE TABLE IF NOT EXISTS insights_entries (
    product_id TEXT PRIMARY KEY,
    insights TEXT NOT NULL,
    created_at REAL NOT NULL,
    last_accessed_at REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_insights_expires_at ON insights_entries(expires_at);
"""

_COLUMNS = (
    "key, key_type, product_id, snapshot, tier_produced, confidence, "
    "created_at, last_accessed_at, access_count, expires_at"
)

_INSIGHTS_COLUMNS = "product_id, insights, created_at, last_accessed_at, access_count, expires_at"


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SqliteCacheStore(BaseCacheStore):
    """SQLite-backed cache store."""

    def __init__(self, db_path: Path | str) -> None:
        path = str(db_path)
        if path != ":memory:":
            resolved = Path(path).expanduser()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            path = str(resolved)
        self._conn = sqlite3.connect(path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    async def get(self, key: IdentificationKey) -> CacheEntry | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM cache_entries WHERE key = ? AND key_type = ?",
            (key.value, key.key_type.value),
        ).fetchone()
        return None if row is None else self._row_to_entry(row)

    async def put(self, entry: CacheEntry) -> None:
        with self._conn:
            self._conn.execute(
                f"""INSERT INTO cache_entries ({_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key, key_type) DO UPDATE SET
                        product_id = excluded.product_id,
                        snapshot = excluded.snapshot,
                        tier_produced = excluded.tier_produced,
                        confidence = excluded.confidence,
                        created_at = excluded.created_at,
                        last_accessed_at = excluded.last_accessed_at,
                        access_count = excluded.access_count,
                        expires_at = excluded.expires_at""",
                (
                    entry.key,
                    entry.key_type.value,
                    entry.product_id,
                    entry.product_snapshot.model_dump_json(),
                    entry.tier_produced,
                    entry.confidence,
                    _ts(entry.created_at),
                    _ts(entry.last_accessed_at),
                    entry.access_count,
                    _ts(entry.expires_at),
                ),
            )

    async def touch(self, key: IdentificationKey, now: datetime) -> CacheEntry | None:
        with self._conn:
            cursor = self._conn.execute(
                """UPDATE cache_entries
                   SET access_count = access_count + 1, last_accessed_at = ?
                   WHERE key = ? AND key_type = ?""",
                (_ts(now), key.value, key.key_type.value),
            )
        if cursor.rowcount == 0:
            return None
        return await self.get(key)

    async def delete(self, key: IdentificationKey) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE key = ? AND key_type = ?",
                (key.value, key.key_type.value),
            )
        return cursor.rowcount > 0

    async def delete_by_product_id(self, product_id: str) -> int:
        if not product_id:
            return 0
        with self._conn:
            entries = self._conn.execute(
                "DELETE FROM cache_entries WHERE product_id = ?", (product_id,)
            )
            insights = self._conn.execute(
                "DELETE FROM insights_entries WHERE product_id = ?", (product_id,)
            )
        return entries.rowcount + insights.rowcount

    async def purge_expired(self, now: datetime) -> int:
        with self._conn:
            entries = self._conn.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?", (_ts(now),)
            )
            insights = self._conn.execute(
                "DELETE FROM insights_entries WHERE expires_at <= ?", (_ts(now),)
            )
        return entries.rowcount + insights.rowcount

    async def list_entries(self) -> list[CacheEntry]:
        rows = self._conn.execute(f"SELECT {_COLUMNS} FROM cache_entries").fetchall()
        entries: list[CacheEntry] = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except ValueError as e:
                logger.warning("Skipping unreadable cache row %s: %s", row["key"], e)
        return entries

    # --- Product insights ---

    async def get_insights(self, product_id: str) -> InsightsEntry | None:
        row = self._conn.execute(
            f"SELECT {_INSIGHTS_COLUMNS} FROM insights_entries WHERE product_id = ?",
            (product_id,),
        ).fetchone()
        return None if row is None else self._row_to_insights(row)

    async def put_insights(self, entry: InsightsEntry) -> None:
        with self._conn:
            self._conn.execute(
                f"""INSERT INTO insights_entries ({_INSIGHTS_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(product_id) DO UPDATE SET
                        insights = excluded.insights,
                        created_at = excluded.created_at,
                        last_accessed_at = excluded.last_accessed_at,
                        access_count = excluded.access_count,
                        expires_at = excluded.expires_at""",
                (
                    entry.product_id,
                    entry.insights.model_dump_json(),
                    _ts(entry.created_at),
                    _ts(entry.last_accessed_at),
                    entry.access_count,
                    _ts(entry.expires_at),
                ),
            )

    async def touch_insights(self, product_id: str, now: datetime) -> InsightsEntry | None:
        with self._conn:
            cursor = self._conn.execute(
                """UPDATE insights_entries
                   SET access_count = access_count + 1, last_accessed_at = ?
                   WHERE product_id = ?""",
                (_ts(now), product_id),
            )
        if cursor.rowcount == 0:
            return None
        return await self.get_insights(product_id)

    async def delete_insights(self, product_id: str) -> bool:
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM insights_entries WHERE product_id = ?", (product_id,)
            )
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            key_type=KeyType(row["key_type"]),
            product_snapshot=ProductSnapshot.model_validate_json(row["snapshot"]),
            tier_produced=row["tier_produced"],
            confidence=row["confidence"],
            created_at=_dt(row["created_at"]),
            last_accessed_at=_dt(row["last_accessed_at"]),
            access_count=row["access_count"],
            expires_at=_dt(row["expires_at"]),
        )

    @staticmethod
    def _row_to_insights(row: sqlite3.Row) -> InsightsEntry:
        return InsightsEntry(
            product_id=row["product_id"],
            insights=ProductInsights.model_validate_json(row["insights"]),
            created_at=_dt(row["created_at"]),
            last_accessed_at=_dt(row["last_accessed_at"]),
            access_count=row["access_count"],
            expires_at=_dt(row["expires_at"]),
        )
