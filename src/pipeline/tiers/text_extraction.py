# src/pipeline/tiers/text_extraction.py — v1
"""Tier 2: read the packaging text and match it against the registry."""

from __future__ import annotations

import asyncio
import logging

from shelfscan.core.errors import ErrorCode
from shelfscan.core.models import TierResult
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.base_tier import BaseTier
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry
from shelfscan.vision.text_parser import parse_text_to_metadata
from shelfscan.vision.vision_service import VisionService

logger = logging.getLogger(__name__)


class TextExtractionTier(BaseTier):
    tier = 2
    name = "text_extraction"
    error_code = ErrorCode.TEXT_EXTRACTION_FAILED

    def __init__(
        self,
        vision: VisionService,
        registry: ProductRegistry,
        timeout_s: float = 3.0,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._vision = vision
        self._registry = registry
        self._timeout_s = timeout_s
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    def applies(self, state: PipelineState) -> bool:
        return state.has_image

    async def run(self, state: PipelineState) -> TierResult:
        text = await self._vision.extract_text(state.request.image, timeout_s=self._timeout_s)
        metadata = parse_text_to_metadata(text)
        state.metadata = metadata

        if not metadata.product_name:
            logger.info("Tier 2: no product name in extracted text")
            return self.miss(metadata=metadata)

        matches = await with_retry(
            lambda: self._registry.search_by_metadata(metadata),
            self._retry.max_attempts,
            self._retry.base_delay_s,
            label="registry.search_by_metadata",
            sleep=self._sleep,
        )
        if not matches:
            logger.info("Tier 2: no registry match for %r", metadata.product_name)
            return self.miss(metadata=metadata)

        best = matches[0]
        confidence = min(1.0, best.match_score)
        logger.info(
            "Tier 2 matched %s (%s) with score %.2f",
            best.product.name, best.product.id, confidence,
        )
        return self.hit(confidence, metadata=metadata, product=best.product.to_snapshot())
