# src/registry/database.py — v1
"""SQLite connection, schema and error mapping for the product registry.

Uses stdlib sqlite3. A `haversine_m(lat1, lon1, lat2, lon2)` SQL function
is registered on the connection so proximity queries can be written in
SQL. Foreign keys are enforced.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.core.geo import haversine_m
from shelfscan.resilience.transient import is_transient

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id TEXT PRIMARY KEY,
    barcode TEXT UNIQUE,
    name TEXT NOT NULL,
    brand TEXT NOT NULL DEFAULT '',
    size TEXT,
    category TEXT,
    image_url TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    flagged_for_review INTEGER NOT NULL DEFAULT 0,
    scan_count INTEGER NOT NULL DEFAULT 0,
    last_scanned_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_products_name ON products(name COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_products_flagged ON products(flagged_for_review);

CREATE TABLE IF NOT EXISTS stores (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    address TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_stores_lat_lon ON stores(latitude, longitude);

CREATE TABLE IF NOT EXISTS sightings (
    product_id TEXT NOT NULL REFERENCES products(id),
    store_id TEXT NOT NULL REFERENCES stores(id),
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    PRIMARY KEY (product_id, store_id)
);
CREATE INDEX IF NOT EXISTS idx_sightings_store ON sightings(store_id);

CREATE TABLE IF NOT EXISTS error_reports (
    id TEXT PRIMARY KEY,
    product_id TEXT,
    barcode TEXT,
    image_fingerprint TEXT,
    tier INTEGER,
    user_feedback TEXT NOT NULL DEFAULT '',
    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_error_reports_product ON error_reports(product_id);

CREATE TABLE IF NOT EXISTS scan_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL DEFAULT '',
    tier INTEGER,
    success INTEGER NOT NULL,
    cached INTEGER NOT NULL DEFAULT 0,
    product_id TEXT,
    barcode TEXT,
    image_fingerprint TEXT,
    confidence REAL,
    processing_time_ms INTEGER NOT NULL DEFAULT 0,
    error_code TEXT,
    created_at TEXT NOT NULL
);
"""


class RegistryDatabase:
    """Owns the registry's sqlite3 connection."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        path = str(db_path)
        if path != ":memory:":
            resolved = Path(path).expanduser()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            path = str(resolved)
        self._path = path
        self.conn = sqlite3.connect(path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON")
        if path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.create_function("haversine_m", 4, haversine_m, deterministic=True)
        self.conn.executescript(_SCHEMA)
        logger.debug("Registry database ready at %s", path)

    def close(self) -> None:
        self.conn.close()


@contextmanager
def registry_errors(code: str, **context: Any) -> Iterator[None]:
    """Translate sqlite3 failures into OrchestratorError(source=registry).

    Foreign-key violations become non-recoverable FOREIGN_KEY_VIOLATION;
    other failures are recoverable when transient (e.g. a locked database).
    """
    try:
        yield
    except OrchestratorError:
        raise
    except sqlite3.IntegrityError as exc:
        if "FOREIGN KEY" in str(exc).upper():
            raise OrchestratorError(
                ErrorCode.FOREIGN_KEY_VIOLATION,
                str(exc),
                ErrorSource.REGISTRY,
                recoverable=False,
                context=context,
            ) from exc
        raise OrchestratorError(
            code, str(exc), ErrorSource.REGISTRY, recoverable=False, context=context
        ) from exc
    except sqlite3.Error as exc:
        raise OrchestratorError(
            code, str(exc), ErrorSource.REGISTRY, recoverable=is_transient(exc), context=context
        ) from exc


def to_db_time(value: datetime) -> str:
    return value.isoformat()


def from_db_time(value: str | None) -> datetime | None:
    return None if value is None else datetime.fromisoformat(value)


def dump_metadata(metadata: dict[str, Any]) -> str:
    return json.dumps(metadata, default=str, sort_keys=True)


def load_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable product metadata: %.80s", raw)
        return {}
    return value if isinstance(value, dict) else {}
