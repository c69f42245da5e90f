# src/registry/product_registry.py — v1
"""Canonical product store: lookup, metadata search, upsert by barcode, review flags.

The registry is the system of record, so failures are never swallowed:
they surface as OrchestratorError(source=registry).
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Callable

from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError, validation_error
from shelfscan.core.models import Product, ProductMetadata, ProductSearchResult, ProductSnapshot, utcnow
from shelfscan.registry.database import (
    RegistryDatabase,
    dump_metadata,
    from_db_time,
    load_metadata,
    registry_errors,
    to_db_time,
)

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10

# Name is required to overlap; brand and size only filter when both sides have one.
# Weights: name 0.5 exact / 0.3 contains / 0.2 contained, brand 0.3/0.2/0.1, size 0.2/0.1.
_SEARCH_SQL = """
SELECT *,
    (CASE
        WHEN lower(name) = :name THEN 0.5
        WHEN instr(lower(name), :name) > 0 THEN 0.3
        WHEN instr(:name, lower(name)) > 0 THEN 0.2
        ELSE 0.0 END
    + CASE
        WHEN :brand = '' OR brand = '' THEN 0.0
        WHEN lower(brand) = :brand THEN 0.3
        WHEN instr(lower(brand), :brand) > 0 THEN 0.2
        WHEN instr(:brand, lower(brand)) > 0 THEN 0.1
        ELSE 0.0 END
    + CASE
        WHEN :size = '' OR size IS NULL OR size = '' THEN 0.0
        WHEN lower(size) = :size THEN 0.2
        WHEN instr(lower(size), :size) > 0 THEN 0.1
        ELSE 0.0 END
    ) AS match_score
FROM products
WHERE name != ''
  AND (instr(lower(name), :name) > 0 OR instr(:name, lower(name)) > 0)
  AND (:brand = '' OR brand = ''
       OR instr(lower(brand), :brand) > 0 OR instr(:brand, lower(brand)) > 0)
  AND (:size = '' OR size IS NULL OR size = ''
       OR instr(lower(size), :size) > 0 OR instr(:size, lower(size)) > 0)
ORDER BY match_score DESC, updated_at DESC
LIMIT :limit
"""

# Optional fields absent from the incoming snapshot keep their stored value.
_UPDATE_SQL = """
UPDATE products SET
    barcode = COALESCE(:barcode, barcode),
    name = :name,
    brand = CASE WHEN :brand = '' THEN brand ELSE :brand END,
    size = COALESCE(:size, size),
    category = COALESCE(:category, category),
    image_url = COALESCE(:image_url, image_url),
    metadata = CASE WHEN :metadata = '{}' THEN metadata ELSE :metadata END,
    updated_at = :now
WHERE id = :id
"""

_INSERT_SQL = """
INSERT INTO products
    (id, barcode, name, brand, size, category, image_url, metadata, created_at, updated_at)
VALUES
    (:id, :barcode, :name, :brand, :size, :category, :image_url, :metadata, :now, :now)
"""


def _require(value: str | None, code: str, label: str) -> str:
    if not value or not value.strip():
        raise validation_error(code, f"{label} must be a non-empty string")
    return value.strip()


def row_to_product(row: sqlite3.Row) -> Product:
    return Product(
        id=row["id"],
        barcode=row["barcode"],
        name=row["name"],
        brand=row["brand"],
        size=row["size"],
        category=row["category"],
        image_url=row["image_url"],
        metadata=load_metadata(row["metadata"]),
        flagged_for_review=bool(row["flagged_for_review"]),
        scan_count=row["scan_count"],
        last_scanned_at=from_db_time(row["last_scanned_at"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


class ProductRegistry:
    """Products and their barcodes."""

    def __init__(self, db: RegistryDatabase, clock: Callable[[], datetime] = utcnow) -> None:
        self._conn = db.conn
        self._clock = clock

    async def find_by_barcode(self, barcode: str) -> Product | None:
        barcode = _require(barcode, ErrorCode.INVALID_REQUEST, "barcode")
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, barcode=barcode):
            row = self._conn.execute(
                "SELECT * FROM products WHERE barcode = ?", (barcode,)
            ).fetchone()
        return None if row is None else row_to_product(row)

    async def find_by_id(self, product_id: str) -> Product | None:
        product_id = _require(product_id, ErrorCode.INVALID_PRODUCT_ID, "product_id")
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, product_id=product_id):
            row = self._conn.execute(
                "SELECT * FROM products WHERE id = ?", (product_id,)
            ).fetchone()
        return None if row is None else row_to_product(row)

    async def search_by_metadata(
        self, metadata: ProductMetadata, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> list[ProductSearchResult]:
        """Rank products whose name overlaps the extracted product name."""
        if not metadata.product_name or not metadata.product_name.strip():
            return []
        params = {
            "name": metadata.product_name.strip().lower(),
            "brand": (metadata.brand_name or "").strip().lower(),
            "size": (metadata.size or "").strip().lower(),
            "limit": limit,
        }
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED, product_name=metadata.product_name):
            rows = self._conn.execute(_SEARCH_SQL, params).fetchall()
        return [
            ProductSearchResult(product=row_to_product(row), match_score=round(row["match_score"], 4))
            for row in rows
        ]

    async def upsert_by_barcode(self, snapshot: ProductSnapshot) -> Product:
        """Insert or update a product, deduplicating on barcode.

        The row owning the snapshot barcode is updated first; failing that
        the row with the snapshot id (which then receives the barcode);
        otherwise a new product is inserted. Runs in one transaction.
        """
        name = _require(snapshot.name, ErrorCode.INVALID_NAME, "product name")
        now = to_db_time(self._clock())
        product_id = snapshot.id or str(uuid.uuid4())
        params = {
            "id": product_id,
            "barcode": snapshot.barcode or None,
            "name": name,
            "brand": snapshot.brand or "",
            "size": snapshot.size,
            "category": snapshot.category,
            "image_url": snapshot.image_url,
            "metadata": dump_metadata(snapshot.metadata),
            "now": now,
        }

        with registry_errors(ErrorCode.PRODUCT_SAVE_FAILED, barcode=snapshot.barcode, name=name):
            with self._conn:
                target_id = None
                if params["barcode"]:
                    owner = self._conn.execute(
                        "SELECT id FROM products WHERE barcode = ?", (params["barcode"],)
                    ).fetchone()
                    if owner is not None:
                        target_id = owner["id"]
                if target_id is None and snapshot.id:
                    known = self._conn.execute(
                        "SELECT id FROM products WHERE id = ?", (snapshot.id,)
                    ).fetchone()
                    if known is not None:
                        target_id = known["id"]

                if target_id is not None:
                    params["id"] = target_id
                    self._conn.execute(_UPDATE_SQL, params)
                else:
                    self._conn.execute(_INSERT_SQL, params)
                row = self._conn.execute(
                    "SELECT * FROM products WHERE id = ?", (params["id"],)
                ).fetchone()

        product = row_to_product(row)
        logger.info("Upserted product %s (%s)", product.id, product.name)
        return product

    async def associate_barcode(self, product_id: str, barcode: str) -> Product:
        """Attach a discovered barcode to an existing product."""
        product_id = _require(product_id, ErrorCode.INVALID_PRODUCT_ID, "product_id")
        barcode = _require(barcode, ErrorCode.INVALID_REQUEST, "barcode")
        with registry_errors(ErrorCode.PRODUCT_SAVE_FAILED, product_id=product_id, barcode=barcode):
            with self._conn:
                cursor = self._conn.execute(
                    "UPDATE products SET barcode = ?, updated_at = ? WHERE id = ?",
                    (barcode, to_db_time(self._clock()), product_id),
                )
            if cursor.rowcount == 0:
                raise OrchestratorError(
                    ErrorCode.PRODUCT_NOT_FOUND,
                    f"Product {product_id} does not exist",
                    ErrorSource.REGISTRY,
                    context={"product_id": product_id},
                )
            row = self._conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        return row_to_product(row)

    async def flag_for_review(self, product_id: str) -> bool:
        """Mark a product for manual review. Returns False if it does not exist."""
        product_id = _require(product_id, ErrorCode.INVALID_PRODUCT_ID, "product_id")
        with registry_errors(ErrorCode.PRODUCT_SAVE_FAILED, product_id=product_id):
            with self._conn:
                cursor = self._conn.execute(
                    "UPDATE products SET flagged_for_review = 1, updated_at = ? WHERE id = ?",
                    (to_db_time(self._clock()), product_id),
                )
        if cursor.rowcount:
            logger.info("Product %s flagged for review", product_id)
        return cursor.rowcount > 0

    async def touch_last_scanned(self, product_id: str) -> None:
        """Record a scan of the product (timestamp and counter)."""
        product_id = _require(product_id, ErrorCode.INVALID_PRODUCT_ID, "product_id")
        with registry_errors(ErrorCode.PRODUCT_SAVE_FAILED, product_id=product_id):
            with self._conn:
                self._conn.execute(
                    """UPDATE products
                       SET last_scanned_at = ?, scan_count = scan_count + 1
                       WHERE id = ?""",
                    (to_db_time(self._clock()), product_id),
                )

    async def get_flagged_products(self, limit: int = 50) -> list[Product]:
        with registry_errors(ErrorCode.REGISTRY_QUERY_FAILED):
            rows = self._conn.execute(
                """SELECT * FROM products WHERE flagged_for_review = 1
                   ORDER BY updated_at DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [row_to_product(row) for row in rows]
