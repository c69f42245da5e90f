# src/pipeline/tiers/base_tier.py — v1
"""Standard interface for identification tiers."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

from shelfscan.core.errors import OrchestratorError
from shelfscan.core.models import TierError, TierResult
from shelfscan.logging.context import set_step
from shelfscan.pipeline.state import PipelineState

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_WARNING = 0.8


class BaseTier(ABC):
    """One escalation step of the identification pipeline.

    Subclasses implement `applies` and `run`; `execute` adds timing and
    turns exceptions into a TierError on the result.
    """

    tier: int
    name: str
    error_code: str
    warning_threshold: float = LOW_CONFIDENCE_WARNING

    @abstractmethod
    def applies(self, state: PipelineState) -> bool:
        """Whether this tier has the inputs it needs for this scan."""

    @abstractmethod
    async def run(self, state: PipelineState) -> TierResult:
        """Attempt identification; may raise."""

    async def execute(self, state: PipelineState) -> TierResult:
        set_step(f"tier{self.tier}:{self.name}")
        start = time.monotonic()
        try:
            result = await self.run(state)
        except Exception as exc:
            logger.warning("Tier %d (%s) failed: %s", self.tier, self.name, exc)
            result = TierResult(tier=self.tier, success=False, error=self.to_tier_error(exc))
        result.processing_time_ms = int((time.monotonic() - start) * 1000)
        return result

    def to_tier_error(self, exc: Exception) -> TierError:
        """External failures stay retryable; registry and validation errors keep their own verdict."""
        if isinstance(exc, OrchestratorError):
            return TierError(
                code=exc.code, message=exc.message, tier=self.tier, retryable=exc.recoverable
            )
        return TierError(code=self.error_code, message=str(exc), tier=self.tier, retryable=True)

    def miss(self, **fields) -> TierResult:
        return TierResult(tier=self.tier, success=False, **fields)

    def hit(self, confidence: float, **fields) -> TierResult:
        warning = None
        if confidence < self.warning_threshold:
            warning = f"Low confidence identification ({confidence:.2f})"
        return TierResult(
            tier=self.tier, success=True, confidence=confidence, warning=warning, **fields
        )
