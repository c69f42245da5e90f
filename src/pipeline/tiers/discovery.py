# src/pipeline/tiers/discovery.py — v1
"""Tier 3: discover a barcode for text-extracted metadata."""

from __future__ import annotations

import logging

from shelfscan.core.errors import ErrorCode
from shelfscan.core.models import TierResult
from shelfscan.discovery.discovery_service import DiscoveryService
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.base_tier import BaseTier

logger = logging.getLogger(__name__)


class DiscoveryTier(BaseTier):
    tier = 3
    name = "discovery"
    error_code = ErrorCode.DISCOVERY_FAILED

    def __init__(self, service: DiscoveryService, enabled: bool = True) -> None:
        self._service = service
        self._enabled = enabled

    def applies(self, state: PipelineState) -> bool:
        return (
            self._enabled
            and self._service.is_configured
            and state.metadata is not None
            and state.metadata.has_search_terms
        )

    async def run(self, state: PipelineState) -> TierResult:
        result = await self._service.discover(state.metadata, state.image_fingerprint)
        if result is None:
            return self.miss(metadata=state.metadata)
        return self.hit(result.confidence, metadata=state.metadata, product=result.product)
