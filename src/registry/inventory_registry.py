# src/registry/inventory_registry.py — v1
"""Product/store sighting ledger."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from shelfscan.core.errors import ErrorCode, validation_error
from shelfscan.core.geo import validate_coordinates, validate_radius
from shelfscan.core.models import (
    ProductSighting,
    ProductWithStores,
    Sighting,
    StoreSighting,
    utcnow,
)
from shelfscan.registry.database import RegistryDatabase, from_db_time, registry_errors, to_db_time
from shelfscan.registry.product_registry import row_to_product
from shelfscan.registry.store_registry import row_to_store, stores_within

logger = logging.getLogger(__name__)


def _require_id(value: str | None, code: str, label: str) -> str:
    if not value or not value.strip():
        raise validation_error(code, f"{label} must be a non-empty string")
    return value.strip()


class InventoryRegistry:
    def __init__(self, db: RegistryDatabase, clock: Callable[[], datetime] = utcnow) -> None:
        self._conn = db.conn
        self._clock = clock

    async def record_sighting(self, product_id: str, store_id: str) -> Sighting:
        """Upsert the (product, store) sighting, refreshing last_seen_at."""
        product_id = _require_id(product_id, ErrorCode.INVALID_PRODUCT_ID, "product_id")
        store_id = _require_id(store_id, ErrorCode.INVALID_STORE_ID, "store_id")
        now = to_db_time(self._clock())
        with registry_errors(ErrorCode.SIGHTING_FAILED, product_id=product_id, store_id=store_id):
            with self._conn:
                self._conn.execute(
                    """INSERT INTO sightings (product_id, store_id, first_seen_at, last_seen_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(product_id, store_id)
                       DO UPDATE SET last_seen_at = excluded.last_seen_at""",
                    (product_id, store_id, now, now),
                )
            row = self._conn.execute(
                "SELECT * FROM sightings WHERE product_id = ? AND store_id = ?",
                (product_id, store_id),
            ).fetchone()
        return Sighting(
            product_id=row["product_id"],
            store_id=row["store_id"],
            first_seen_at=from_db_time(row["first_seen_at"]),
            last_seen_at=from_db_time(row["last_seen_at"]),
        )

    async def get_stores_for_product(self, product_id: str) -> list[StoreSighting]:
        product_id = _require_id(product_id, ErrorCode.INVALID_PRODUCT_ID, "product_id")
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, product_id=product_id):
            rows = self._conn.execute(
                """SELECT s.*, si.last_seen_at AS sighting_last_seen_at
                   FROM sightings si JOIN stores s ON s.id = si.store_id
                   WHERE si.product_id = ?
                   ORDER BY si.last_seen_at DESC""",
                (product_id,),
            ).fetchall()
        return [
            StoreSighting(store=row_to_store(row), last_seen_at=from_db_time(row["sighting_last_seen_at"]))
            for row in rows
        ]

    async def get_products_at_store(self, store_id: str) -> list[ProductSighting]:
        store_id = _require_id(store_id, ErrorCode.INVALID_STORE_ID, "store_id")
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, store_id=store_id):
            rows = self._conn.execute(
                """SELECT p.*, si.last_seen_at AS sighting_last_seen_at
                   FROM sightings si JOIN products p ON p.id = si.product_id
                   WHERE si.store_id = ?
                   ORDER BY si.last_seen_at DESC""",
                (store_id,),
            ).fetchall()
        return [
            ProductSighting(product=row_to_product(row), last_seen_at=from_db_time(row["sighting_last_seen_at"]))
            for row in rows
        ]

    async def get_products_near_location(
        self, latitude: float, longitude: float, radius_m: float
    ) -> list[ProductWithStores]:
        """Products sighted at stores within radius_m, each with its stores closest first.

        Products are ordered by their closest store.
        """
        validate_coordinates(latitude, longitude)
        validate_radius(radius_m)
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, latitude=latitude, longitude=longitude):
            stores = {s.id: s for s in stores_within(self._conn, latitude, longitude, radius_m)}
            if not stores:
                return []

            placeholders = ", ".join("?" for _ in stores)
            pair_rows = self._conn.execute(
                f"""SELECT p.*, si.store_id AS sighting_store_id
                    FROM sightings si JOIN products p ON p.id = si.product_id
                    WHERE si.store_id IN ({placeholders})""",
                tuple(stores),
            ).fetchall()

        grouped: dict[str, ProductWithStores] = {}
        for row in pair_rows:
            store = stores[row["sighting_store_id"]]
            item = grouped.get(row["id"])
            if item is None:
                item = ProductWithStores(product=row_to_product(row), stores=[])
                grouped[row["id"]] = item
            item.stores.append(store)

        for item in grouped.values():
            item.stores.sort(key=lambda s: s.distance_meters)
        return sorted(grouped.values(), key=lambda item: item.stores[0].distance_meters)
