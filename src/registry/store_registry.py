# src/registry/store_registry.py — v1
"""Physical store locations with proximity search and find-or-create dedup.

Two stores closer than the proximity threshold are considered the same
place. This is enforced by find_or_create_nearby rather than by a
constraint, so it holds on a best-effort basis under concurrent writers.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import uuid
from datetime import datetime
from typing import Callable

from shelfscan.core.errors import ErrorCode, validation_error
from shelfscan.core.geo import EARTH_RADIUS_M, validate_coordinates, validate_radius
from shelfscan.core.models import Store, StoreWithDistance, utcnow
from shelfscan.registry.database import RegistryDatabase, from_db_time, registry_errors, to_db_time

logger = logging.getLogger(__name__)

DEFAULT_PROXIMITY_M = 100.0


def bounding_box(latitude: float, longitude: float, radius_m: float) -> tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) enclosing a circle of radius_m."""
    d_lat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = math.cos(math.radians(latitude))
    d_lon = 180.0 if cos_lat < 1e-9 else min(180.0, math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat)))
    return latitude - d_lat, latitude + d_lat, longitude - d_lon, longitude + d_lon


def row_to_store(row: sqlite3.Row) -> Store:
    return Store(
        id=row["id"],
        name=row["name"],
        address=row["address"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def row_to_store_with_distance(row: sqlite3.Row) -> StoreWithDistance:
    return StoreWithDistance(
        **row_to_store(row).model_dump(), distance_meters=round(row["distance_m"], 2)
    )


def stores_within(
    conn: sqlite3.Connection, latitude: float, longitude: float, radius_m: float
) -> list[StoreWithDistance]:
    """Stores within radius_m of the point, closest first (bounding box, then exact distance)."""
    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_m)
    if min_lon < -180.0 or max_lon > 180.0:
        # Box crosses the antimeridian; rely on the distance predicate alone.
        min_lon, max_lon = -180.0, 180.0
    rows = conn.execute(
        """SELECT *, haversine_m(:lat, :lon, latitude, longitude) AS distance_m
           FROM stores
           WHERE latitude BETWEEN :min_lat AND :max_lat
             AND longitude BETWEEN :min_lon AND :max_lon
             AND haversine_m(:lat, :lon, latitude, longitude) <= :radius
           ORDER BY distance_m ASC""",
        {
            "lat": latitude,
            "lon": longitude,
            "min_lat": min_lat,
            "max_lat": max_lat,
            "min_lon": min_lon,
            "max_lon": max_lon,
            "radius": radius_m,
        },
    ).fetchall()
    return [row_to_store_with_distance(row) for row in rows]


class StoreRegistry:
    def __init__(
        self,
        db: RegistryDatabase,
        proximity_m: float = DEFAULT_PROXIMITY_M,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._conn = db.conn
        self._proximity_m = proximity_m
        self._clock = clock

    async def find_nearby(
        self, latitude: float, longitude: float, radius_m: float
    ) -> list[StoreWithDistance]:
        """Stores within radius_m, closest first."""
        validate_coordinates(latitude, longitude)
        validate_radius(radius_m)
        with registry_errors(ErrorCode.STORE_LOOKUP_FAILED, latitude=latitude, longitude=longitude):
            return self._query_nearby(latitude, longitude, radius_m)

    async def find_or_create_nearby(
        self, latitude: float, longitude: float, name: str, address: str
    ) -> Store:
        """Return the closest store within the proximity threshold, creating one if none exists."""
        validate_coordinates(latitude, longitude)
        name = self._require_text(name, ErrorCode.INVALID_NAME, "Store name")
        address = self._require_text(address, ErrorCode.INVALID_ADDRESS, "Store address")

        with registry_errors(ErrorCode.STORE_LOOKUP_FAILED, latitude=latitude, longitude=longitude):
            with self._conn:
                nearby = self._query_nearby(latitude, longitude, self._proximity_m)
                if nearby:
                    closest = nearby[0]
                    logger.debug(
                        "Reusing store %s at %.1fm", closest.id, closest.distance_meters
                    )
                    return Store(**closest.model_dump(exclude={"distance_meters"}))
                store = self._insert(latitude, longitude, name, address)

        logger.info("Created store %s (%s) at %.6f, %.6f", store.id, store.name, latitude, longitude)
        return store

    async def create(self, latitude: float, longitude: float, name: str, address: str) -> Store:
        validate_coordinates(latitude, longitude)
        name = self._require_text(name, ErrorCode.INVALID_NAME, "Store name")
        address = self._require_text(address, ErrorCode.INVALID_ADDRESS, "Store address")
        with registry_errors(ErrorCode.STORE_LOOKUP_FAILED):
            with self._conn:
                return self._insert(latitude, longitude, name, address)

    async def find_by_id(self, store_id: str) -> Store | None:
        store_id = self._require_text(store_id, ErrorCode.INVALID_STORE_ID, "store_id")
        with registry_errors(ErrorCode.STORE_LOOKUP_FAILED, store_id=store_id):
            row = self._conn.execute("SELECT * FROM stores WHERE id = ?", (store_id,)).fetchone()
        return None if row is None else row_to_store(row)

    def _query_nearby(self, latitude: float, longitude: float, radius_m: float) -> list[StoreWithDistance]:
        return stores_within(self._conn, latitude, longitude, radius_m)

    def _insert(self, latitude: float, longitude: float, name: str, address: str) -> Store:
        now = to_db_time(self._clock())
        store_id = str(uuid.uuid4())
        self._conn.execute(
            """INSERT INTO stores (id, name, address, latitude, longitude, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (store_id, name, address, latitude, longitude, now, now),
        )
        row = self._conn.execute("SELECT * FROM stores WHERE id = ?", (store_id,)).fetchone()
        return row_to_store(row)

    @staticmethod
    def _require_text(value: str | None, code: str, label: str) -> str:
        if not value or not value.strip():
            raise validation_error(code, f"{label} must be a non-empty string")
        return value.strip()
