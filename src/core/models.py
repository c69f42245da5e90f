# src/core/models.py — v3
"""Shared Pydantic domain models used across modules.

No module redefines these types; cache-specific models live in
cache/models.py and LLM wire types in llm/models.py.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# === IDENTIFICATION KEYS ===


class KeyType(str, Enum):
    BARCODE = "barcode"
    IMAGE_FINGERPRINT = "image_fingerprint"


class IdentificationKey(BaseModel):
    """Cache lookup key: a barcode or an image fingerprint."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(min_length=1)
    key_type: KeyType

    @classmethod
    def barcode(cls, value: str) -> IdentificationKey:
        return cls(value=value, key_type=KeyType.BARCODE)

    @classmethod
    def image_fingerprint(cls, value: str) -> IdentificationKey:
        return cls(value=value, key_type=KeyType.IMAGE_FINGERPRINT)

    @property
    def storage_key(self) -> str:
        """Flat string form used by key-value backends."""
        return f"{self.key_type.value}:{self.value}"

    def __str__(self) -> str:
        return self.storage_key


# === PRODUCT ===


class VisualCharacteristics(BaseModel):
    colors: list[str] = Field(default_factory=list)
    packaging: str | None = None
    shape: str | None = None


class ProductMetadata(BaseModel):
    """Pipeline-internal description of what was seen on the package."""

    product_name: str | None = None
    brand_name: str | None = None
    size: str | None = None
    category: str | None = None
    keywords: list[str] = Field(default_factory=list)
    visual_characteristics: VisualCharacteristics | None = None

    @property
    def has_search_terms(self) -> bool:
        return bool(self.product_name or self.brand_name or self.size)


class ProductSnapshot(BaseModel):
    """Denormalized product data as cached and returned to callers.

    `id` is empty until the snapshot has been written to the registry.
    """

    id: str = ""
    barcode: str | None = None
    name: str
    brand: str = ""
    size: str | None = None
    category: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Product(BaseModel):
    """Canonical registry row."""

    id: str
    barcode: str | None = None
    name: str
    brand: str = ""
    size: str | None = None
    category: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    flagged_for_review: bool = False
    scan_count: int = 0
    last_scanned_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def to_snapshot(self) -> ProductSnapshot:
        return ProductSnapshot(
            id=self.id,
            barcode=self.barcode,
            name=self.name,
            brand=self.brand,
            size=self.size,
            category=self.category,
            image_url=self.image_url,
            metadata=dict(self.metadata),
        )


class ProductSearchResult(BaseModel):
    product: Product
    match_score: float


# === STORES & INVENTORY ===


class Coordinates(BaseModel):
    latitude: float
    longitude: float


class Store(BaseModel):
    id: str
    name: str
    address: str
    latitude: float
    longitude: float
    created_at: datetime
    updated_at: datetime


class StoreWithDistance(Store):
    distance_meters: float


class Sighting(BaseModel):
    product_id: str
    store_id: str
    first_seen_at: datetime
    last_seen_at: datetime


class StoreSighting(BaseModel):
    """A store where a product was seen, with the latest sighting time."""

    store: Store
    last_seen_at: datetime


class ProductSighting(BaseModel):
    """A product seen at a store, with the latest sighting time."""

    product: Product
    last_seen_at: datetime


class ProductWithStores(BaseModel):
    """A product near a location, with matching stores sorted by distance."""

    product: Product
    stores: list[StoreWithDistance]


# === PIPELINE ===


class TierError(BaseModel):
    code: str
    message: str
    tier: int
    retryable: bool = True


class TierResult(BaseModel):
    """Uniform envelope returned by every identification tier."""

    tier: int = Field(ge=1, le=4)
    success: bool
    metadata: ProductMetadata | None = None
    product: ProductSnapshot | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time_ms: int = 0
    error: TierError | None = None
    retake_required: bool = False
    warning: str | None = None


class DiscoveryCandidate(BaseModel):
    """One barcode candidate returned by the discovery API."""

    barcode: str
    format: str
    product_name: str | None = None
    brand: str | None = None
    category: str | None = None
    confidence: float | None = None


# === PRODUCT INSIGHTS ===


class DimensionScore(BaseModel):
    """One scored dimension: 0 is worst, 100 best."""

    score: float = Field(ge=0.0, le=100.0)
    explanation: str = Field(min_length=1)
    key_factors: list[str] = Field(min_length=1)


class DimensionAnalysis(BaseModel):
    """Five-dimension assessment of a product, as returned by the vision capability."""

    health: DimensionScore
    processing: DimensionScore
    allergens: DimensionScore
    responsibly_produced: DimensionScore
    environmental_impact: DimensionScore
    overall_confidence: float = Field(ge=0.0, le=1.0)


class ProductInsights(DimensionAnalysis):
    """A DimensionAnalysis bound to a registry product."""

    product_id: str = Field(min_length=1)
    analyzed_at: datetime
    cached: bool = False


class InsightsStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# === SCAN REQUEST / RESULT ===


class ImagePayload(BaseModel):
    data: bytes
    media_type: str = "image/jpeg"


class ScanRequest(BaseModel):
    barcode: str | None = None
    image: ImagePayload | None = None
    image_fingerprint: str | None = None
    user_id: str = "anonymous"
    session_id: str = ""
    location: Coordinates | None = None
    include_insights: bool = True


class ScanAnalysis(BaseModel):
    """How a scan was answered."""

    tier: int
    confidence: float
    processing_time_ms: int
    cache_key: str | None = None
    retake_required: bool = False
    warning: str | None = None
    tiers_attempted: list[int] = Field(default_factory=list)
    insights: ProductInsights | None = None
    insights_status: InsightsStatus = InsightsStatus.SKIPPED


class ScanResult(BaseModel):
    from_cache: bool
    analysis: ScanAnalysis
    product: ProductSnapshot | None = None
    store_id: str | None = None


class ScanLog(BaseModel):
    """Per-scan ledger row."""

    user_id: str
    session_id: str
    tier: int | None = None
    success: bool
    cached: bool = False
    product_id: str | None = None
    barcode: str | None = None
    image_fingerprint: str | None = None
    confidence: float | None = None
    processing_time_ms: int = 0
    error_code: str | None = None


# === ERROR / CORRECTION LOOP ===


class ErrorReport(BaseModel):
    incorrect_product: ProductSnapshot
    barcode: str | None = None
    image_fingerprint: str | None = None
    image: ImagePayload | None = None
    user_feedback: str = ""
    user_id: str = "anonymous"
    session_id: str = ""
    tier: int | None = None


class ErrorReportResponse(BaseModel):
    success: bool
    report_id: str | None = None
    alternative_product: ProductSnapshot | None = None
    message: str = ""
    steps_failed: list[str] = Field(default_factory=list)


class ErrorStats(BaseModel):
    total_reports: int
    reports_by_tier: dict[str, int]
    total_scans: int
    error_rate: float
    flagged_products: int

