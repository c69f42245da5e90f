# src/pipeline/tiers/direct_lookup.py — v1
"""Tier 1: cache keys not yet consulted, then the registry by barcode. No external calls."""

from __future__ import annotations

import asyncio
import logging

from shelfscan.cache.service import DocumentCache
from shelfscan.core.errors import ErrorCode
from shelfscan.core.models import TierResult
from shelfscan.core.outcome import Ok
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.base_tier import BaseTier
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry

logger = logging.getLogger(__name__)


class DirectLookupTier(BaseTier):
    tier = 1
    name = "direct_lookup"
    error_code = ErrorCode.REGISTRY_QUERY_FAILED

    def __init__(
        self,
        cache: DocumentCache,
        registry: ProductRegistry,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._registry = registry
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    def applies(self, state: PipelineState) -> bool:
        return bool(state.cache_keys())

    async def run(self, state: PipelineState) -> TierResult:
        for key in state.cache_keys():
            if key.storage_key in state.consulted_keys:
                continue
            state.consulted_keys.add(key.storage_key)
            outcome = await self._cache.lookup(key)
            if isinstance(outcome, Ok) and outcome.value.hit:
                entry = outcome.value.entry
                logger.info("Tier 1 cache hit on %s", key)
                return self.hit(entry.confidence, product=entry.product_snapshot)

        barcode = state.request.barcode
        if not barcode:
            return self.miss()

        product = await with_retry(
            lambda: self._registry.find_by_barcode(barcode),
            self._retry.max_attempts,
            self._retry.base_delay_s,
            label="registry.find_by_barcode",
            sleep=self._sleep,
        )
        if product is None:
            logger.info("Tier 1: barcode %s not in registry", barcode)
            return self.miss()
        logger.info("Tier 1 registry hit: %s (%s)", product.name, product.id)
        return self.hit(1.0, product=product.to_snapshot())
