# src/orchestrator/correction.py — v1
"""Error/correction loop for user-reported misidentifications.

Steps, each attempted regardless of the others:
  1. persist the report (retried),
  2. invalidate cache entries by barcode, image fingerprint and product id,
  3. flag the product for manual review (retried),
  4. when the image is available, re-run full visual analysis for an
     alternative identification.
`success` reflects whether the report itself was persisted; failed steps
are listed in `steps_failed`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from shelfscan.cache.service import DocumentCache
from shelfscan.core.models import (
    ErrorReport,
    ErrorReportResponse,
    IdentificationKey,
    ProductSnapshot,
    ScanRequest,
)
from shelfscan.core.outcome import Failed, Ok, Outcome
from shelfscan.logging.context import set_step
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.visual_analysis import VisualAnalysisTier
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.registry.reports import ScanLedger
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _same_product(a: ProductSnapshot, b: ProductSnapshot) -> bool:
    return (
        a.name.strip().lower() == b.name.strip().lower()
        and a.brand.strip().lower() == b.brand.strip().lower()
    )


class CorrectionLoop:
    def __init__(
        self,
        cache: DocumentCache,
        products: ProductRegistry,
        ledger: ScanLedger,
        reanalysis: VisualAnalysisTier | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._products = products
        self._ledger = ledger
        self._reanalysis = reanalysis
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def report_error(self, report: ErrorReport) -> ErrorReportResponse:
        steps_failed: list[str] = []
        product_id = report.incorrect_product.id

        set_step("save_report")
        saved = await self._attempt(
            lambda: self._ledger.save_error_report(report), "registry.save_error_report"
        )
        report_id = saved.value if isinstance(saved, Ok) else None
        if report_id is None:
            steps_failed.append("save_report")

        set_step("invalidate_cache")
        if not await self._invalidate(report):
            steps_failed.append("invalidate_cache")

        set_step("flag_product")
        if product_id:
            flagged = await self._attempt(
                lambda: self._products.flag_for_review(product_id), "registry.flag_for_review"
            )
            if isinstance(flagged, Failed):
                steps_failed.append("flag_product")
            elif not flagged.value:
                logger.warning("Reported product %s does not exist in the registry", product_id)

        alternative = None
        if report.image is not None and report.image.data and self._reanalysis is not None:
            set_step("reanalyze")
            alternative = await self._find_alternative(report)

        if report_id is None:
            message = "Failed to save error report"
        elif alternative is not None:
            message = "Error reported. Alternative product identified."
        else:
            message = "Error reported. Product flagged for manual review."

        logger.info(
            "Error report %s for product %s (failed steps: %s)",
            report_id, product_id, ", ".join(steps_failed) or "none",
        )
        return ErrorReportResponse(
            success=report_id is not None,
            report_id=report_id,
            alternative_product=alternative,
            message=message,
            steps_failed=steps_failed,
        )

    async def _invalidate(self, report: ErrorReport) -> bool:
        """Remove every cache entry that could serve the wrong answer again."""
        outcomes: list[Outcome] = []
        if report.barcode:
            outcomes.append(await self._cache.invalidate(IdentificationKey.barcode(report.barcode)))
        if report.image_fingerprint:
            outcomes.append(
                await self._cache.invalidate(IdentificationKey.image_fingerprint(report.image_fingerprint))
            )
        if report.incorrect_product.id:
            outcomes.append(await self._cache.invalidate_by_product_id(report.incorrect_product.id))
        ok = all(not isinstance(o, Failed) for o in outcomes)
        if not ok:
            logger.error("Cache invalidation incomplete; cached answers may be stale")
        return ok

    async def _find_alternative(self, report: ErrorReport) -> ProductSnapshot | None:
        request = ScanRequest(
            barcode=report.barcode,
            image=report.image,
            image_fingerprint=report.image_fingerprint,
            user_id=report.user_id,
            session_id=report.session_id,
        )
        result = await self._reanalysis.execute(PipelineState.for_request(request))
        if not result.success or result.product is None:
            logger.info("Re-analysis found no alternative")
            return None
        if _same_product(result.product, report.incorrect_product):
            logger.info("Re-analysis returned the reported product again, discarding")
            return None
        return result.product

    async def _attempt(self, operation: Callable[[], Awaitable[T]], label: str) -> Outcome[T]:
        try:
            value = await with_retry(
                operation,
                self._retry.max_attempts,
                self._retry.base_delay_s,
                label=label,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.error("%s failed: %s", label, exc)
            return Failed(exc)
        return Ok(value)
