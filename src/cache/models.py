# src/cache/models.py — v3
"""Cache domain models: CacheEntry, InsightsEntry, CacheLookupResult, CacheStats."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from shelfscan.core.models import IdentificationKey, KeyType, ProductInsights, ProductSnapshot


class CacheEntry(BaseModel):
    """A previously computed identification stored under one key."""

    key: str = Field(min_length=1)
    key_type: KeyType
    product_snapshot: ProductSnapshot
    tier_produced: int = Field(ge=1, le=4)
    confidence: float = Field(ge=0.0, le=1.0)
    created_at: datetime
    last_accessed_at: datetime
    access_count: int = Field(default=0, ge=0)
    expires_at: datetime

    @model_validator(mode="after")
    def check_expiry_after_creation(self) -> CacheEntry:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self

    @property
    def identification_key(self) -> IdentificationKey:
        return IdentificationKey(value=self.key, key_type=self.key_type)

    @property
    def product_id(self) -> str:
        return self.product_snapshot.id

    def is_expired(self, now: datetime) -> bool:
        """Logically absent once `now >= expires_at`."""
        return now >= self.expires_at


class InsightsEntry(BaseModel):
    """Product insights cached under the product id."""

    product_id: str = Field(min_length=1)
    insights: ProductInsights
    created_at: datetime
    last_accessed_at: datetime
    access_count: int = Field(default=0, ge=0)
    expires_at: datetime

    @model_validator(mode="after")
    def check_expiry_after_creation(self) -> InsightsEntry:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CacheLookupResult(BaseModel):
    hit: bool = False
    entry: CacheEntry | None = None


class CacheStats(BaseModel):
    total_entries: int = 0
    barcode_entries: int = 0
    image_fingerprint_entries: int = 0
    expired_entries: int = 0
    avg_access_count: float = 0.0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None
