# src/orchestrator/scan_orchestrator.py — v2
"""Scan orchestrator: cache first, then escalate through the identification tiers.

  CHECK_CACHE --hit--> UPDATE_REGISTRY_TIMESTAMP --> PROCESS_LOCATION --> INSIGHTS --> RETURNED
       |
       +--miss--> RUN_PIPELINE --> PERSIST_BOTH_STORES --> PROCESS_LOCATION --> INSIGHTS --> RETURNED
                      |
                      +--> FAILED (no product, or a non-retryable tier error)

Registry writes happen before cache writes and are not atomic with them:
a crash in between leaves a registry row without a cache entry, which the
next scan repairs through Tier 1.

Failure policy:
  - the registry upsert of a new identification is a hard failure,
  - cache writes, scan counters, location, insights and scan logs are
    best-effort (logged, never raised). A degraded location or insights
    step leaves its warning in ScanAnalysis.warning.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, TypeVar

from shelfscan.cache.fingerprint import keys_for_request
from shelfscan.cache.service import DocumentCache, ttl_days_for_tier
from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.core.models import (
    Coordinates,
    ErrorReport,
    ErrorReportResponse,
    IdentificationKey,
    InsightsStatus,
    Product,
    ProductInsights,
    ProductSnapshot,
    ScanAnalysis,
    ScanLog,
    ScanRequest,
    ScanResult,
)
from shelfscan.core.outcome import Degraded, Failed, Ok, Outcome, value_or
from shelfscan.insights.insights_service import InsightsService
from shelfscan.logging.context import clear_context, set_scan_context, set_step
from shelfscan.orchestrator.correction import CorrectionLoop
from shelfscan.pipeline.identification_pipeline import IdentificationPipeline, PipelineResult
from shelfscan.registry.inventory_registry import InventoryRegistry
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.registry.reports import ScanLedger
from shelfscan.registry.store_registry import StoreRegistry
from shelfscan.resilience.retry import RetryPolicy, SleepFn, with_retry
from shelfscan.resilience.transient import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STORE_NAME = "Unknown Store"

STORE_UNAVAILABLE_WARNING = "Store location could not be recorded"
SIGHTING_UNAVAILABLE_WARNING = "Product sighting could not be recorded"
INSIGHTS_UNAVAILABLE_WARNING = "Product insights unavailable"


class ScanOrchestrator:
    """Entry point for scans and error reports."""

    def __init__(
        self,
        cache: DocumentCache,
        products: ProductRegistry,
        stores: StoreRegistry,
        inventory: InventoryRegistry,
        ledger: ScanLedger,
        pipeline: IdentificationPipeline,
        correction: CorrectionLoop | None = None,
        insights: InsightsService | None = None,
        ttl_for_tier: Callable[[int], int] = ttl_days_for_tier,
        retry_policy: RetryPolicy | None = None,
        unknown_store_name: str = DEFAULT_STORE_NAME,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._products = products
        self._stores = stores
        self._inventory = inventory
        self._ledger = ledger
        self._pipeline = pipeline
        self._insights = insights
        self._ttl_for_tier = ttl_for_tier
        self._retry = retry_policy or RetryPolicy()
        self._unknown_store_name = unknown_store_name
        self._sleep = sleep
        self._correction = correction or CorrectionLoop(
            cache=cache,
            products=products,
            ledger=ledger,
            retry_policy=self._retry,
            sleep=sleep,
        )

    # --- Public API ---

    async def process_scan(self, request: ScanRequest) -> ScanResult:
        """Identify the product in `request`, reusing cached answers where possible.

        Raises:
            OrchestratorError: INVALID_REQUEST without barcode or image,
                NO_PRODUCTS_FOUND when no tier identified anything,
                PRODUCT_SAVE_FAILED when the registry write fails, or the
                code of a tier error that aborted escalation.
        """
        scan_id = uuid.uuid4().hex[:12]
        set_scan_context(scan_id, request.session_id or None, request.user_id)
        start = time.monotonic()
        try:
            self._validate(request)
            keys = keys_for_request(request)
            logger.info(
                "Scan started (barcode=%s, image=%s, location=%s)",
                request.barcode, request.image is not None, request.location is not None,
            )

            set_step("check_cache")
            cached = await self._check_cache(keys)
            if cached is not None:
                key, snapshot, confidence, tier = cached
                return await self._handle_hit(request, key, snapshot, confidence, tier, start)
            return await self._handle_miss(request, keys, start)
        except OrchestratorError as exc:
            logger.error("Scan failed: %s", exc)
            await self._log_scan(
                request, start, success=False, error_code=exc.code,
            )
            raise
        finally:
            clear_context()

    async def report_error(self, report: ErrorReport) -> ErrorReportResponse:
        """Record a user-reported misidentification and try to correct it."""
        set_scan_context(uuid.uuid4().hex[:12], report.session_id or None, report.user_id)
        try:
            return await self._correction.report_error(report)
        finally:
            clear_context()

    # --- Cache hit / miss ---

    async def _check_cache(
        self, keys: list[IdentificationKey]
    ) -> tuple[IdentificationKey, ProductSnapshot, float, int] | None:
        for key in keys:
            outcome = await self._cache.lookup(key)
            if isinstance(outcome, Ok) and outcome.value.hit:
                entry = outcome.value.entry
                logger.info("Cache hit on %s (tier %d)", key, entry.tier_produced)
                return key, entry.product_snapshot, entry.confidence, entry.tier_produced
        return None

    async def _handle_hit(
        self,
        request: ScanRequest,
        key: IdentificationKey,
        snapshot: ProductSnapshot,
        confidence: float,
        tier: int,
        start: float,
    ) -> ScanResult:
        set_step("update_registry_timestamp")
        if snapshot.id:
            await self._best_effort(
                lambda: self._products.touch_last_scanned(snapshot.id),
                "registry.touch_last_scanned",
            )
        location = await self._process_location(request.location, snapshot.id)
        insights, insights_status = await self._product_insights(request, snapshot)

        elapsed = self._elapsed_ms(start)
        await self._log_scan(
            request, start, success=True, cached=True, tier=tier,
            product_id=snapshot.id or None, confidence=confidence,
        )
        set_step("returned")
        return ScanResult(
            from_cache=True,
            product=snapshot,
            store_id=value_or(location, None),
            analysis=ScanAnalysis(
                tier=tier,
                confidence=confidence,
                processing_time_ms=elapsed,
                cache_key=key.storage_key,
                warning=self._join_warnings(location, insights),
                insights=value_or(insights, None),
                insights_status=insights_status,
            ),
        )

    async def _handle_miss(
        self, request: ScanRequest, keys: list[IdentificationKey], start: float
    ) -> ScanResult:
        set_step("run_pipeline")
        outcome = await self._pipeline.run(request, consulted_keys=keys)
        final = outcome.final

        if outcome.retake_required:
            await self._log_scan(
                request, start, success=False, tier=final.tier,
                confidence=final.confidence, error_code=ErrorCode.LOW_CONFIDENCE,
            )
            set_step("returned")
            return ScanResult(
                from_cache=False,
                product=None,
                analysis=ScanAnalysis(
                    tier=final.tier,
                    confidence=final.confidence,
                    processing_time_ms=self._elapsed_ms(start),
                    retake_required=True,
                    warning=final.error.message if final.error else None,
                    tiers_attempted=outcome.tiers_attempted,
                ),
            )

        if not outcome.success:
            raise self._pipeline_failure(outcome)

        set_step("persist")
        product = await self._persist_registry(final.product)
        snapshot = product.to_snapshot()
        ttl_days = self._ttl_for_tier(final.tier)
        for key in keys:
            stored = await self._cache.store(key, snapshot, final.tier, final.confidence, ttl_days=ttl_days)
            if isinstance(stored, Failed):
                logger.warning("Product %s saved but not cached under %s", product.id, key)
        await self._best_effort(
            lambda: self._products.touch_last_scanned(product.id), "registry.touch_last_scanned"
        )

        location = await self._process_location(request.location, product.id)
        insights, insights_status = await self._product_insights(request, snapshot)
        await self._log_scan(
            request, start, success=True, tier=final.tier,
            product_id=product.id, confidence=final.confidence,
        )
        set_step("returned")
        return ScanResult(
            from_cache=False,
            product=snapshot,
            store_id=value_or(location, None),
            analysis=ScanAnalysis(
                tier=final.tier,
                confidence=final.confidence,
                processing_time_ms=self._elapsed_ms(start),
                cache_key=keys[0].storage_key if keys else None,
                warning=self._join_warnings(location, insights, base=final.warning),
                insights=value_or(insights, None),
                insights_status=insights_status,
                tiers_attempted=outcome.tiers_attempted,
            ),
        )

    async def _persist_registry(self, snapshot: ProductSnapshot) -> Product:
        try:
            return await self._retrying(
                lambda: self._products.upsert_by_barcode(snapshot), "registry.upsert_by_barcode"
            )
        except Exception as exc:
            raise OrchestratorError(
                ErrorCode.PRODUCT_SAVE_FAILED,
                f"Failed to save identified product: {exc}",
                ErrorSource.REGISTRY,
                recoverable=is_transient(exc),
                context={"barcode": snapshot.barcode, "name": snapshot.name},
            ) from exc

    @staticmethod
    def _pipeline_failure(outcome: PipelineResult) -> OrchestratorError:
        aborted = outcome.aborted_error
        if aborted is not None:
            return OrchestratorError(
                aborted.code,
                aborted.message,
                ErrorSource.IDENTIFICATION_PIPELINE,
                recoverable=False,
                context={"tier": aborted.tier, "tiers_attempted": outcome.tiers_attempted},
            )
        last_error = outcome.final.error if outcome.final is not None else None
        return OrchestratorError(
            ErrorCode.NO_PRODUCTS_FOUND,
            "No product could be identified from this scan",
            ErrorSource.IDENTIFICATION_PIPELINE,
            recoverable=False,
            context={
                "tiers_attempted": outcome.tiers_attempted,
                "last_error": last_error.code if last_error else None,
            },
        )

    # --- Location ---

    async def _process_location(
        self, location: Coordinates | None, product_id: str
    ) -> Outcome[str | None]:
        """Find or create the store at `location` and record the sighting.

        Carries the store id, or None with a warning when either write failed.
        """
        if location is None or not product_id:
            return Ok(None)
        set_step("process_location")
        lat, lon = location.latitude, location.longitude
        store_outcome = await self._best_effort(
            lambda: self._stores.find_or_create_nearby(
                lat, lon, self._unknown_store_name, f"{lat}, {lon}"
            ),
            "registry.find_or_create_nearby",
        )
        if isinstance(store_outcome, Failed):
            return Degraded(None, STORE_UNAVAILABLE_WARNING)
        store = store_outcome.value
        sighting = await self._best_effort(
            lambda: self._inventory.record_sighting(product_id, store.id),
            "registry.record_sighting",
        )
        if isinstance(sighting, Failed):
            return Degraded(None, SIGHTING_UNAVAILABLE_WARNING)
        return Ok(store.id)

    # --- Insights ---

    async def _product_insights(
        self, request: ScanRequest, snapshot: ProductSnapshot
    ) -> tuple[Outcome[ProductInsights | None], InsightsStatus]:
        if self._insights is None or not request.include_insights:
            return Ok(None), InsightsStatus.SKIPPED
        set_step("insights")
        outcome = await self._insights.insights_for(snapshot, request.image)
        if isinstance(outcome, Failed):
            return Degraded(None, INSIGHTS_UNAVAILABLE_WARNING), InsightsStatus.FAILED
        if outcome.value is None:
            return outcome, InsightsStatus.SKIPPED
        return outcome, InsightsStatus.COMPLETED

    # --- Helpers ---

    async def _log_scan(
        self,
        request: ScanRequest,
        start: float,
        success: bool,
        cached: bool = False,
        tier: int | None = None,
        product_id: str | None = None,
        confidence: float | None = None,
        error_code: str | None = None,
    ) -> None:
        entry = ScanLog(
            user_id=request.user_id,
            session_id=request.session_id,
            tier=tier,
            success=success,
            cached=cached,
            product_id=product_id,
            barcode=request.barcode,
            image_fingerprint=request.image_fingerprint,
            confidence=confidence,
            processing_time_ms=self._elapsed_ms(start),
            error_code=error_code,
        )
        await self._best_effort(lambda: self._ledger.record_scan_log(entry), "registry.record_scan_log")

    async def _retrying(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await with_retry(
            operation,
            self._retry.max_attempts,
            self._retry.base_delay_s,
            label=label,
            sleep=self._sleep,
        )

    async def _best_effort(self, operation: Callable[[], Awaitable[T]], label: str) -> Outcome[T]:
        try:
            return Ok(await self._retrying(operation, label))
        except Exception as exc:
            logger.warning("%s failed, continuing: %s", label, exc)
            return Failed(exc)

    @staticmethod
    def _join_warnings(*outcomes: Outcome, base: str | None = None) -> str | None:
        warnings = [base] if base else []
        warnings.extend(o.warning for o in outcomes if isinstance(o, Degraded))
        return "; ".join(warnings) or None

    @staticmethod
    def _validate(request: ScanRequest) -> None:
        has_image = request.image is not None and bool(request.image.data)
        if not (request.barcode or has_image or request.image_fingerprint):
            raise OrchestratorError(
                ErrorCode.INVALID_REQUEST,
                "A scan needs a barcode, an image or an image fingerprint",
                ErrorSource.IDENTIFICATION_PIPELINE,
                recoverable=False,
            )

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
