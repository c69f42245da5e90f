# src/discovery/discovery_service.py — v1
"""Tier 3 barcode discovery: find the barcode of a visually identified product.

Candidates from the lookup API are filtered by barcode-format validity,
re-ranked against the extracted metadata, and the winner is written to the
registry and seeded into the cache under both the barcode and the image
fingerprint.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel

from shelfscan.cache.service import DocumentCache
from shelfscan.core.barcodes import is_valid_barcode
from shelfscan.core.models import (
    DiscoveryCandidate,
    IdentificationKey,
    ProductMetadata,
    ProductSnapshot,
)
from shelfscan.core.outcome import Failed
from shelfscan.core.similarity import jaccard_similarity
from shelfscan.discovery.barcode_lookup_client import BarcodeLookupClient
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry

logger = logging.getLogger(__name__)

DISCOVERY_TIER = 3
DEFAULT_CANDIDATE_CONFIDENCE = 0.5
NAME_WEIGHT = 0.3
BRAND_WEIGHT = 0.2


class DiscoveryResult(BaseModel):
    barcode: str
    format: str
    confidence: float
    product: ProductSnapshot


def score_candidate(candidate: DiscoveryCandidate, metadata: ProductMetadata) -> float:
    """API confidence (0.5 if absent) boosted by name and brand word overlap, capped at 1.0."""
    score = candidate.confidence if candidate.confidence is not None else DEFAULT_CANDIDATE_CONFIDENCE
    if metadata.product_name and candidate.product_name:
        score += NAME_WEIGHT * jaccard_similarity(metadata.product_name, candidate.product_name)
    if metadata.brand_name and candidate.brand:
        score += BRAND_WEIGHT * jaccard_similarity(metadata.brand_name, candidate.brand)
    return min(score, 1.0)


def select_best_candidate(
    candidates: list[DiscoveryCandidate], metadata: ProductMetadata
) -> tuple[DiscoveryCandidate, float] | None:
    """Highest-scoring candidate with a valid barcode, or None.

    Ties keep the API's order.
    """
    best: tuple[DiscoveryCandidate, float] | None = None
    for candidate in candidates:
        if not is_valid_barcode(candidate.barcode, candidate.format):
            logger.debug("Rejecting candidate %r (%s)", candidate.barcode, candidate.format)
            continue
        score = score_candidate(candidate, metadata)
        if best is None or score > best[1]:
            best = (candidate, score)
    return best


def build_discovered_snapshot(candidate: DiscoveryCandidate, metadata: ProductMetadata) -> ProductSnapshot:
    extra = metadata.model_dump(exclude_none=True)
    extra.update({"discoveredBarcode": True, "barcodeFormat": candidate.format})
    return ProductSnapshot(
        barcode=candidate.barcode,
        name=candidate.product_name or metadata.product_name or "Unknown Product",
        brand=candidate.brand or metadata.brand_name or "Unknown Brand",
        size=metadata.size,
        category=candidate.category or metadata.category or "Unknown",
        metadata=extra,
    )


class DiscoveryService:
    def __init__(
        self,
        client: BarcodeLookupClient,
        registry: ProductRegistry,
        cache: DocumentCache,
        ttl_days: int = 90,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._registry = registry
        self._cache = cache
        self._ttl_days = ttl_days
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return self._client.is_configured

    async def discover(
        self, metadata: ProductMetadata, image_fingerprint: str | None = None
    ) -> DiscoveryResult | None:
        """Discover and persist a barcode for `metadata`; None when nothing usable was found.

        Lookup failures and registry failures propagate; cache seeding is
        best-effort.
        """
        candidates = await self._client.search_products(metadata)
        if not candidates:
            logger.info("Discovery found no candidates for %r", metadata.product_name)
            return None

        best = select_best_candidate(candidates, metadata)
        if best is None:
            logger.info("Discovery found no candidate with a valid barcode")
            return None
        candidate, confidence = best

        snapshot = build_discovered_snapshot(candidate, metadata)
        product = await with_retry(
            lambda: self._registry.upsert_by_barcode(snapshot),
            self._retry.max_attempts,
            self._retry.base_delay_s,
            label="registry.upsert_by_barcode",
            sleep=self._sleep,
        )
        saved = product.to_snapshot()

        keys = [IdentificationKey.barcode(candidate.barcode)]
        if image_fingerprint:
            keys.append(IdentificationKey.image_fingerprint(image_fingerprint))
        for key in keys:
            outcome = await self._cache.store(key, saved, DISCOVERY_TIER, confidence, self._ttl_days)
            if isinstance(outcome, Failed):
                logger.warning("Discovered product %s not cached under %s", saved.id, key)

        logger.info(
            "Discovered barcode %s (%s) for %s, confidence %.2f",
            candidate.barcode, candidate.format, saved.name, confidence,
        )
        return DiscoveryResult(
            barcode=candidate.barcode, format=candidate.format, confidence=confidence, product=saved
        )
