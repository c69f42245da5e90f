# tests/unit/orchestrator/test_scan_orchestrator.py — v2
"""Tests for orchestrator/scan_orchestrator.py — cache hit/miss paths, persistence, location, insights."""

from __future__ import annotations

import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from shelfscan.core.errors import ErrorCode, OrchestratorError
from shelfscan.core.models import (
    Coordinates,
    DimensionAnalysis,
    DimensionScore,
    IdentificationKey,
    ImagePayload,
    InsightsStatus,
    ProductInsights,
    ProductSnapshot,
    ScanRequest,
    TierError,
    TierResult,
)
from shelfscan.core.outcome import Failed, Ok
from shelfscan.insights.insights_service import InsightsService
from shelfscan.orchestrator.scan_orchestrator import ScanOrchestrator
from shelfscan.pipeline.identification_pipeline import PipelineResult
from shelfscan.pipeline.state import PipelineState

BARCODE = "012345678901"
LOCATION = Coordinates(latitude=37.7749, longitude=-122.4194)


def _pipeline(final: TierResult | None, attempted: list[TierResult] | None = None) -> MagicMock:
    async def _run(request, consulted_keys=None):
        results = attempted if attempted is not None else ([final] if final else [])
        return PipelineResult(
            state=PipelineState.for_request(request, consulted_keys), final=final, results=results
        )

    pipeline = MagicMock()
    pipeline.run = AsyncMock(side_effect=_run)
    return pipeline


@pytest.fixture
def build(cache, products, stores, inventory, ledger, fake_sleep):
    def _build(pipeline, **overrides) -> ScanOrchestrator:
        parts = dict(
            cache=cache,
            products=products,
            stores=stores,
            inventory=inventory,
            ledger=ledger,
            pipeline=pipeline,
            sleep=fake_sleep,
        )
        parts.update(overrides)
        return ScanOrchestrator(**parts)

    return _build


def _scan_logs(registry_db) -> list:
    return registry_db.conn.execute("SELECT * FROM scan_logs").fetchall()


class TestCacheHit:
    @pytest.mark.asyncio
    async def test_hit_skips_pipeline(self, build, cache, products, sample_snapshot, registry_db):
        saved = await products.upsert_by_barcode(sample_snapshot)
        await cache.store(IdentificationKey.barcode(BARCODE), saved.to_snapshot(), 1, 1.0)
        pipeline = _pipeline(None)

        result = await build(pipeline).process_scan(ScanRequest(barcode=BARCODE, user_id="u1"))

        assert result.from_cache is True
        assert result.product.id == saved.id
        assert result.analysis.tier == 1
        assert result.analysis.cache_key == f"barcode:{BARCODE}"
        pipeline.run.assert_not_awaited()
        assert (await products.find_by_id(saved.id)).scan_count == 1
        logs = _scan_logs(registry_db)
        assert logs[0]["cached"] == 1
        assert logs[0]["success"] == 1

    @pytest.mark.asyncio
    async def test_hit_records_location(self, build, cache, products, inventory, sample_snapshot):
        saved = await products.upsert_by_barcode(sample_snapshot)
        await cache.store(IdentificationKey.barcode(BARCODE), saved.to_snapshot(), 1, 1.0)

        result = await build(_pipeline(None)).process_scan(
            ScanRequest(barcode=BARCODE, location=LOCATION)
        )

        assert result.store_id is not None
        sightings = await inventory.get_stores_for_product(saved.id)
        assert [s.store.id for s in sightings] == [result.store_id]
        assert sightings[0].store.name == "Unknown Store"


class TestCacheMiss:
    @pytest.mark.asyncio
    async def test_visual_identification_is_persisted(self, build, cache, products, clock, sample_image):
        identified = ProductSnapshot(
            barcode=BARCODE, name="Organic Milk", brand="Happy Farms", size="1 gal", category="Dairy"
        )
        final = TierResult(tier=4, success=True, product=identified, confidence=0.85)
        attempted = [TierResult(tier=1, success=False), TierResult(tier=2, success=False), final]
        request = ScanRequest(barcode=BARCODE, image=sample_image, image_fingerprint="F1", user_id="u1")

        result = await build(_pipeline(final, attempted)).process_scan(request)

        assert result.from_cache is False
        assert result.product.id
        assert result.analysis.tier == 4
        assert result.analysis.tiers_attempted == [1, 2, 4]
        assert (await products.find_by_barcode(BARCODE)).id == result.product.id

        for key in (IdentificationKey.barcode(BARCODE), IdentificationKey.image_fingerprint("F1")):
            entry = (await cache.lookup(key)).value.entry
            assert entry.product_id == result.product.id
            assert entry.tier_produced == 4
            assert entry.expires_at - entry.created_at == timedelta(days=30)

    @pytest.mark.asyncio
    async def test_registry_tier_gets_long_ttl(self, build, cache, products, sample_snapshot):
        saved = await products.upsert_by_barcode(sample_snapshot)
        final = TierResult(tier=1, success=True, product=saved.to_snapshot(), confidence=1.0)
        await build(_pipeline(final)).process_scan(ScanRequest(barcode=BARCODE))
        entry = (await cache.lookup(IdentificationKey.barcode(BARCODE))).value.entry
        assert entry.expires_at - entry.created_at == timedelta(days=90)

    @pytest.mark.asyncio
    async def test_second_scan_is_served_from_cache(self, build, products):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        pipeline = _pipeline(final)
        orchestrator = build(pipeline)
        await orchestrator.process_scan(ScanRequest(barcode=BARCODE))
        second = await orchestrator.process_scan(ScanRequest(barcode=BARCODE))
        assert second.from_cache is True
        assert pipeline.run.await_count == 1

    @pytest.mark.asyncio
    async def test_location_on_miss(self, build, inventory):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        result = await build(_pipeline(final)).process_scan(ScanRequest(barcode=BARCODE, location=LOCATION))
        assert result.store_id is not None
        assert len(await inventory.get_stores_for_product(result.product.id)) == 1

    @pytest.mark.asyncio
    async def test_retake(self, build, registry_db, sample_image):
        final = TierResult(
            tier=4,
            success=False,
            retake_required=True,
            confidence=0.45,
            error=TierError(code=ErrorCode.LOW_CONFIDENCE, message="Image unclear", tier=4),
        )
        result = await build(_pipeline(final)).process_scan(ScanRequest(image=sample_image))

        assert result.product is None
        assert result.analysis.retake_required is True
        assert result.analysis.confidence == 0.45
        assert result.analysis.warning == "Image unclear"
        assert _scan_logs(registry_db)[0]["error_code"] == ErrorCode.LOW_CONFIDENCE

    @pytest.mark.asyncio
    async def test_nothing_identified(self, build, registry_db):
        with pytest.raises(OrchestratorError) as exc_info:
            await build(_pipeline(TierResult(tier=1, success=False))).process_scan(
                ScanRequest(barcode=BARCODE)
            )
        assert exc_info.value.code == ErrorCode.NO_PRODUCTS_FOUND
        assert exc_info.value.context["tiers_attempted"] == [1]
        log = _scan_logs(registry_db)[0]
        assert log["success"] == 0
        assert log["error_code"] == ErrorCode.NO_PRODUCTS_FOUND

    @pytest.mark.asyncio
    async def test_aborted_escalation_surfaces_tier_error(self, build):
        final = TierResult(
            tier=2,
            success=False,
            error=TierError(code=ErrorCode.INVALID_NAME, message="bad name", tier=2, retryable=False),
        )
        with pytest.raises(OrchestratorError) as exc_info:
            await build(_pipeline(final)).process_scan(ScanRequest(image=ImagePayload(data=b"x")))
        assert exc_info.value.code == ErrorCode.INVALID_NAME
        assert exc_info.value.recoverable is False

    @pytest.mark.asyncio
    async def test_registry_save_failure(self, build, fake_sleep):
        products = MagicMock()
        products.upsert_by_barcode = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        with pytest.raises(OrchestratorError) as exc_info:
            await build(_pipeline(final), products=products).process_scan(ScanRequest(barcode=BARCODE))
        assert exc_info.value.code == ErrorCode.PRODUCT_SAVE_FAILED
        assert exc_info.value.recoverable is True
        assert products.upsert_by_barcode.await_count == 3


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_request(self, build, registry_db):
        pipeline = _pipeline(None)
        with pytest.raises(OrchestratorError) as exc_info:
            await build(pipeline).process_scan(ScanRequest(user_id="u1"))
        assert exc_info.value.code == ErrorCode.INVALID_REQUEST
        pipeline.run.assert_not_awaited()
        assert _scan_logs(registry_db)[0]["error_code"] == ErrorCode.INVALID_REQUEST


class TestBestEffortSteps:
    @pytest.mark.asyncio
    async def test_location_failure_does_not_fail_scan(self, build):
        stores = MagicMock()
        stores.find_or_create_nearby = AsyncMock(side_effect=ValueError("bad geometry"))
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        result = await build(_pipeline(final), stores=stores).process_scan(
            ScanRequest(barcode=BARCODE, location=LOCATION)
        )
        assert result.product is not None
        assert result.store_id is None
        assert result.analysis.warning == "Store location could not be recorded"

    @pytest.mark.asyncio
    async def test_scan_log_failure_is_swallowed(self, build):
        ledger = MagicMock()
        ledger.record_scan_log = AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        result = await build(_pipeline(final), ledger=ledger).process_scan(ScanRequest(barcode=BARCODE))
        assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_sighting_failure_is_a_warning(self, build):
        inventory = MagicMock()
        inventory.record_sighting = AsyncMock(side_effect=ValueError("constraint failed"))
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"),
            confidence=0.7, warning="Low confidence identification",
        )
        result = await build(_pipeline(final), inventory=inventory).process_scan(
            ScanRequest(barcode=BARCODE, location=LOCATION)
        )
        assert result.store_id is None
        assert result.analysis.warning == (
            "Low confidence identification; Product sighting could not be recorded"
        )

    @pytest.mark.asyncio
    async def test_no_location_no_warning(self, build):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        result = await build(_pipeline(final)).process_scan(ScanRequest(barcode=BARCODE))
        assert result.analysis.warning is None


def _dimension_analysis() -> DimensionAnalysis:
    score = DimensionScore(score=70, explanation="Balanced.", key_factors=["whole milk"])
    return DimensionAnalysis(
        health=score,
        processing=score,
        allergens=score,
        responsibly_produced=score,
        environmental_impact=score,
        overall_confidence=0.7,
    )


def _insights_mock(outcome) -> MagicMock:
    service = MagicMock()
    service.insights_for = AsyncMock(return_value=outcome)
    return service


class TestInsights:
    @pytest.mark.asyncio
    async def test_attached_on_miss(self, build, cache, sample_image):
        vision = MagicMock()
        vision.analyze_dimensions = AsyncMock(return_value=_dimension_analysis())
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        orchestrator = build(_pipeline(final), insights=InsightsService(cache, vision))

        result = await orchestrator.process_scan(ScanRequest(barcode=BARCODE, image=sample_image))

        assert result.analysis.insights_status is InsightsStatus.COMPLETED
        assert result.analysis.insights.product_id == result.product.id
        assert result.analysis.insights.cached is False
        assert vision.analyze_dimensions.await_args.args[1].id == result.product.id
        assert (await cache.lookup_insights(result.product.id)).value is not None

    @pytest.mark.asyncio
    async def test_attached_on_hit_from_cache(self, build, cache, sample_image):
        vision = MagicMock()
        vision.analyze_dimensions = AsyncMock(return_value=_dimension_analysis())
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        orchestrator = build(_pipeline(final), insights=InsightsService(cache, vision))
        await orchestrator.process_scan(ScanRequest(barcode=BARCODE, image=sample_image))

        second = await orchestrator.process_scan(ScanRequest(barcode=BARCODE))

        assert second.from_cache is True
        assert second.analysis.insights_status is InsightsStatus.COMPLETED
        assert second.analysis.insights.cached is True
        assert vision.analyze_dimensions.await_count == 1

    @pytest.mark.asyncio
    async def test_hit_passes_snapshot_and_image(self, build, cache, products, sample_snapshot, sample_image):
        saved = await products.upsert_by_barcode(sample_snapshot)
        await cache.store(IdentificationKey.barcode(BARCODE), saved.to_snapshot(), 1, 1.0)
        insights = _insights_mock(Ok(None))

        result = await build(_pipeline(None), insights=insights).process_scan(
            ScanRequest(barcode=BARCODE, image=sample_image)
        )

        snapshot, image = insights.insights_for.await_args.args
        assert snapshot.id == saved.id
        assert image == sample_image
        assert result.analysis.insights is None
        assert result.analysis.insights_status is InsightsStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_failure_degrades_scan(self, build):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        insights = _insights_mock(Failed(TimeoutError("vision timed out")))

        result = await build(_pipeline(final), insights=insights).process_scan(ScanRequest(barcode=BARCODE))

        assert result.product is not None
        assert result.analysis.insights is None
        assert result.analysis.insights_status is InsightsStatus.FAILED
        assert result.analysis.warning == "Product insights unavailable"

    @pytest.mark.asyncio
    async def test_opt_out(self, build):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        insights = _insights_mock(Ok(None))
        result = await build(_pipeline(final), insights=insights).process_scan(
            ScanRequest(barcode=BARCODE, include_insights=False)
        )
        assert result.analysis.insights_status is InsightsStatus.SKIPPED
        insights.insights_for.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_without_service(self, build):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        result = await build(_pipeline(final)).process_scan(ScanRequest(barcode=BARCODE))
        assert result.analysis.insights is None
        assert result.analysis.insights_status is InsightsStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_not_requested_on_retake(self, build, sample_image):
        final = TierResult(
            tier=4,
            success=False,
            retake_required=True,
            confidence=0.45,
            error=TierError(code=ErrorCode.LOW_CONFIDENCE, message="Image unclear", tier=4),
        )
        insights = _insights_mock(Ok(None))
        result = await build(_pipeline(final), insights=insights).process_scan(ScanRequest(image=sample_image))
        assert result.analysis.insights_status is InsightsStatus.SKIPPED
        insights.insights_for.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_completed_insights_are_returned(self, build, clock):
        final = TierResult(
            tier=4, success=True, product=ProductSnapshot(barcode=BARCODE, name="Organic Milk"), confidence=0.9
        )
        ready = ProductInsights(
            product_id="P1", analyzed_at=clock.now, cached=True, **_dimension_analysis().model_dump()
        )
        result = await build(_pipeline(final), insights=_insights_mock(Ok(ready))).process_scan(
            ScanRequest(barcode=BARCODE)
        )
        assert result.analysis.insights == ready
        assert result.analysis.insights_status is InsightsStatus.COMPLETED
        assert result.analysis.warning is None
