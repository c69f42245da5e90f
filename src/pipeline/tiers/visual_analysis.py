# src/pipeline/tiers/visual_analysis.py — v1
"""Tier 4: full structured analysis of the image.

Below the minimum confidence the scan ends with `retake_required` rather
than an error. Otherwise an existing registry product matching the
analysis is preferred over creating a new one.
"""

from __future__ import annotations

import asyncio
import logging

from shelfscan.core.errors import ErrorCode
from shelfscan.core.models import ProductMetadata, ProductSnapshot, TierError, TierResult
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.base_tier import BaseTier
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry
from shelfscan.vision.vision_service import (
    DEFAULT_MIN_CONFIDENCE,
    VisionService,
    is_confidence_sufficient,
)

logger = logging.getLogger(__name__)


def snapshot_from_metadata(metadata: ProductMetadata, barcode: str | None = None) -> ProductSnapshot:
    return ProductSnapshot(
        barcode=barcode,
        name=metadata.product_name or "Unknown Product",
        brand=metadata.brand_name or "",
        size=metadata.size,
        category=metadata.category,
        metadata=metadata.model_dump(exclude_none=True),
    )


class VisualAnalysisTier(BaseTier):
    tier = 4
    name = "visual_analysis"
    error_code = ErrorCode.IMAGE_ANALYSIS_FAILED

    def __init__(
        self,
        vision: VisionService,
        registry: ProductRegistry,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        timeout_s: float = 8.0,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._vision = vision
        self._registry = registry
        self._min_confidence = min_confidence
        self._timeout_s = timeout_s
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    def applies(self, state: PipelineState) -> bool:
        return state.has_image

    async def run(self, state: PipelineState) -> TierResult:
        analysis = await self._vision.analyze_product(state.request.image, timeout_s=self._timeout_s)
        metadata = analysis.metadata

        if not is_confidence_sufficient(analysis.confidence, self._min_confidence):
            logger.info(
                "Tier 4 confidence %.2f below %.2f, asking for a retake",
                analysis.confidence, self._min_confidence,
            )
            return self.miss(
                metadata=metadata,
                confidence=analysis.confidence,
                retake_required=True,
                error=TierError(
                    code=ErrorCode.LOW_CONFIDENCE,
                    message="Image unclear, please retake the photo",
                    tier=self.tier,
                    retryable=True,
                ),
            )

        product = None
        if metadata.product_name:
            matches = await with_retry(
                lambda: self._registry.search_by_metadata(metadata),
                self._retry.max_attempts,
                self._retry.base_delay_s,
                label="registry.search_by_metadata",
                sleep=self._sleep,
            )
            if matches:
                product = matches[0].product.to_snapshot()
                # Tier 1 missed, so a scanned barcode is not owned by another product.
                if not product.barcode and state.request.barcode:
                    product.barcode = state.request.barcode
                logger.info("Tier 4 matched existing product %s", product.id)
        if product is None:
            product = snapshot_from_metadata(metadata, state.request.barcode)

        return self.hit(analysis.confidence, metadata=metadata, product=product)
