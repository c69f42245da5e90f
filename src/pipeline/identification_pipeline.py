# src/pipeline/identification_pipeline.py — v1
"""Identification pipeline: run the tiers cheapest first until one succeeds.

Escalation is strictly sequential with early exit:
  - a successful tier ends the run,
  - `retake_required` ends the run as a soft failure,
  - a tier error with `retryable=False` aborts the escalation,
  - anything else escalates to the next applicable tier.
Tiers whose inputs are missing (no image, no metadata) are skipped and do
not appear in `tiers_attempted`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from shelfscan.core.models import IdentificationKey, ScanRequest, TierError, TierResult
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.base_tier import BaseTier

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Outcome of one escalation run."""

    state: PipelineState
    final: TierResult | None = None
    results: list[TierResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.final is not None and self.final.success and self.final.product is not None

    @property
    def retake_required(self) -> bool:
        return self.final is not None and self.final.retake_required

    @property
    def tiers_attempted(self) -> list[int]:
        return [r.tier for r in self.results]

    @property
    def aborted_error(self) -> TierError | None:
        """The non-retryable error that stopped escalation, if any."""
        if self.final is not None and self.final.error is not None and not self.final.error.retryable:
            return self.final.error
        return None


class IdentificationPipeline:
    """Ordered tiers sharing one PipelineState per scan."""

    def __init__(self, tiers: list[BaseTier]) -> None:
        self._tiers = sorted(tiers, key=lambda t: t.tier)

    @property
    def tiers(self) -> list[BaseTier]:
        return list(self._tiers)

    async def run(
        self, request: ScanRequest, consulted_keys: list[IdentificationKey] | None = None
    ) -> PipelineResult:
        start = time.monotonic()
        state = PipelineState.for_request(request, consulted_keys)
        result = PipelineResult(state=state)

        for tier in self._tiers:
            if not tier.applies(state):
                logger.debug("Skipping tier %d (%s): inputs missing", tier.tier, tier.name)
                continue

            logger.info("Running tier %d (%s)", tier.tier, tier.name)
            tier_result = await tier.execute(state)
            result.results.append(tier_result)
            result.final = tier_result

            if tier_result.success and tier_result.product is not None:
                logger.info(
                    "Tier %d identified %s (confidence %.2f, %dms)",
                    tier.tier, tier_result.product.name,
                    tier_result.confidence, tier_result.processing_time_ms,
                )
                break
            if tier_result.retake_required:
                logger.info("Tier %d requires a retake, stopping", tier.tier)
                break
            if tier_result.error is not None and not tier_result.error.retryable:
                logger.warning(
                    "Tier %d aborted escalation: %s", tier.tier, tier_result.error.code,
                )
                break

        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result
