# src/pipeline/state.py — v2
"""Mutable state carried through the identification tiers of one scan."""

from __future__ import annotations

from pydantic import BaseModel, Field

from shelfscan.cache.fingerprint import compute_image_fingerprint
from shelfscan.core.models import IdentificationKey, ProductMetadata, ScanRequest


class PipelineState(BaseModel):
    """What earlier tiers learned that later tiers can use.

    `consulted_keys` holds the storage keys already looked up in the
    cache (by the orchestrator or Tier 1) so they are not read twice.
    `metadata` is set by text extraction and consumed by discovery.
    """

    request: ScanRequest
    image_fingerprint: str | None = None
    consulted_keys: set[str] = Field(default_factory=set)
    metadata: ProductMetadata | None = None

    @classmethod
    def for_request(
        cls, request: ScanRequest, consulted: list[IdentificationKey] | None = None
    ) -> PipelineState:
        fingerprint = request.image_fingerprint
        if not fingerprint and request.image is not None and request.image.data:
            fingerprint = compute_image_fingerprint(request.image.data)
        return cls(
            request=request,
            image_fingerprint=fingerprint,
            consulted_keys={key.storage_key for key in consulted or []},
        )

    @property
    def has_image(self) -> bool:
        return self.request.image is not None and bool(self.request.image.data)

    def cache_keys(self) -> list[IdentificationKey]:
        """Barcode then fingerprint key, for whichever are known."""
        keys: list[IdentificationKey] = []
        if self.request.barcode:
            keys.append(IdentificationKey.barcode(self.request.barcode))
        if self.image_fingerprint:
            keys.append(IdentificationKey.image_fingerprint(self.image_fingerprint))
        return keys
