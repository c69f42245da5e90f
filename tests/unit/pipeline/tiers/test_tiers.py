# tests/unit/pipeline/tiers/test_tiers.py — v1
"""Tests for the four identification tiers against a temp registry and cache."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.core.models import (
    IdentificationKey,
    ImagePayload,
    ProductMetadata,
    ProductSnapshot,
    ScanRequest,
)
from shelfscan.discovery.discovery_service import DiscoveryResult
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.direct_lookup import DirectLookupTier
from shelfscan.pipeline.tiers.discovery import DiscoveryTier
from shelfscan.pipeline.tiers.text_extraction import TextExtractionTier
from shelfscan.pipeline.tiers.visual_analysis import VisualAnalysisTier
from shelfscan.vision.vision_service import ProductAnalysis

IMAGE = ImagePayload(data=b"\xff\xd8fake")


def _state(
    barcode: str | None = None,
    image: ImagePayload | None = IMAGE,
    fingerprint: str | None = None,
    consulted: list[IdentificationKey] | None = None,
) -> PipelineState:
    request = ScanRequest(barcode=barcode, image=image, image_fingerprint=fingerprint)
    return PipelineState.for_request(request, consulted)


def _vision(text: str = "", analysis: ProductAnalysis | None = None) -> MagicMock:
    vision = MagicMock()
    vision.extract_text = AsyncMock(return_value=text)
    vision.analyze_product = AsyncMock(return_value=analysis)
    return vision


class TestDirectLookupTier:
    @pytest.mark.asyncio
    async def test_cache_hit(self, cache, products, fake_sleep, sample_snapshot):
        await cache.store(IdentificationKey.barcode("012345678901"), sample_snapshot, 3, 0.9)
        tier = DirectLookupTier(cache, products, sleep=fake_sleep)
        result = await tier.execute(_state("012345678901", image=None))
        assert result.success is True
        assert result.confidence == 0.9
        assert result.product.name == "Organic Milk"

    @pytest.mark.asyncio
    async def test_registry_hit(self, cache, products, fake_sleep, sample_snapshot):
        saved = await products.upsert_by_barcode(sample_snapshot)
        tier = DirectLookupTier(cache, products, sleep=fake_sleep)
        result = await tier.execute(_state("012345678901", image=None))
        assert result.success is True
        assert result.confidence == 1.0
        assert result.warning is None
        assert result.product.id == saved.id

    @pytest.mark.asyncio
    async def test_skips_consulted_keys(self, products, fake_sleep):
        cache = MagicMock()
        cache.lookup = AsyncMock()
        tier = DirectLookupTier(cache, products, sleep=fake_sleep)
        state = _state("B1", image=None, consulted=[IdentificationKey.barcode("B1")])
        result = await tier.execute(state)
        assert result.success is False
        cache.lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fingerprint_only_miss(self, cache, products, fake_sleep):
        tier = DirectLookupTier(cache, products, sleep=fake_sleep)
        result = await tier.execute(_state())
        assert result.success is False
        assert result.error is None

    def test_applies_without_keys(self, cache, products):
        tier = DirectLookupTier(cache, products)
        assert tier.applies(_state(image=None)) is False


class TestTextExtractionTier:
    @pytest.mark.asyncio
    async def test_registry_match(self, products, fake_sleep, sample_snapshot):
        saved = await products.upsert_by_barcode(sample_snapshot)
        vision = _vision("Product Name: Organic Milk\nBrand: Happy Farms\nSize: 1 gal")
        tier = TextExtractionTier(vision, products, timeout_s=3.0, sleep=fake_sleep)
        state = _state()

        result = await tier.execute(state)

        assert result.success is True
        assert result.product.id == saved.id
        assert result.confidence == pytest.approx(1.0)
        assert state.metadata.product_name == "Organic Milk"
        assert vision.extract_text.await_args.kwargs["timeout_s"] == 3.0

    @pytest.mark.asyncio
    async def test_no_match_keeps_metadata(self, products, fake_sleep):
        tier = TextExtractionTier(_vision("Product Name: Rye Crispbread"), products, sleep=fake_sleep)
        state = _state()
        result = await tier.execute(state)
        assert result.success is False
        assert result.metadata.product_name == "Rye Crispbread"
        assert state.metadata == result.metadata

    @pytest.mark.asyncio
    async def test_vision_failure_is_retryable(self, products, fake_sleep):
        vision = MagicMock()
        vision.extract_text = AsyncMock(side_effect=TimeoutError("vision timed out"))
        result = await TextExtractionTier(vision, products, sleep=fake_sleep).execute(_state())
        assert result.error.code == ErrorCode.TEXT_EXTRACTION_FAILED
        assert result.error.retryable is True

    def test_needs_image(self, products):
        assert TextExtractionTier(_vision(), products).applies(_state("B1", image=None)) is False


class TestDiscoveryTier:
    def _service(self, result=None, configured: bool = True) -> MagicMock:
        service = MagicMock()
        service.is_configured = configured
        service.discover = AsyncMock(return_value=result)
        return service

    def test_requires_metadata_and_configuration(self):
        state = _state()
        assert DiscoveryTier(self._service()).applies(state) is False
        state.metadata = ProductMetadata(product_name="Greek Yogurt")
        assert DiscoveryTier(self._service()).applies(state) is True
        assert DiscoveryTier(self._service(configured=False)).applies(state) is False
        assert DiscoveryTier(self._service(), enabled=False).applies(state) is False

    @pytest.mark.asyncio
    async def test_discovered_product(self):
        product = ProductSnapshot(id="P9", barcode="0123456789012", name="Greek Yogurt")
        service = self._service(
            DiscoveryResult(barcode="0123456789012", format="EAN-13", confidence=0.9, product=product)
        )
        state = _state(fingerprint="F1")
        state.metadata = ProductMetadata(product_name="Greek Yogurt")

        result = await DiscoveryTier(service).execute(state)

        assert result.success is True
        assert result.product.id == "P9"
        service.discover.assert_awaited_once_with(state.metadata, "F1")

    @pytest.mark.asyncio
    async def test_nothing_found(self):
        state = _state()
        state.metadata = ProductMetadata(product_name="Greek Yogurt")
        result = await DiscoveryTier(self._service(None)).execute(state)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_open_circuit_escalates(self):
        service = self._service()
        service.discover = AsyncMock(
            side_effect=OrchestratorError(
                ErrorCode.CIRCUIT_OPEN, "open", ErrorSource.IDENTIFICATION_PIPELINE, recoverable=True
            )
        )
        state = _state()
        state.metadata = ProductMetadata(product_name="Greek Yogurt")
        result = await DiscoveryTier(service).execute(state)
        assert result.error.code == ErrorCode.CIRCUIT_OPEN
        assert result.error.retryable is True


class TestVisualAnalysisTier:
    @pytest.mark.asyncio
    async def test_low_confidence_requires_retake(self, products, fake_sleep, sample_metadata):
        vision = _vision(analysis=ProductAnalysis(metadata=sample_metadata, confidence=0.45))
        result = await VisualAnalysisTier(vision, products, sleep=fake_sleep).execute(_state())
        assert result.success is False
        assert result.retake_required is True
        assert result.error.code == ErrorCode.LOW_CONFIDENCE
        assert result.product is None

    @pytest.mark.asyncio
    async def test_new_product_from_analysis(self, products, fake_sleep, sample_metadata):
        vision = _vision(analysis=ProductAnalysis(metadata=sample_metadata, confidence=0.75))
        tier = VisualAnalysisTier(vision, products, min_confidence=0.6, sleep=fake_sleep)

        result = await tier.execute(_state("012345678901"))

        assert result.success is True
        assert result.confidence == 0.75
        assert result.warning is not None
        assert result.product.id == ""
        assert result.product.name == "Organic Milk"
        assert result.product.barcode == "012345678901"

    @pytest.mark.asyncio
    async def test_prefers_existing_product(self, products, fake_sleep, sample_metadata):
        saved = await products.upsert_by_barcode(
            ProductSnapshot(name="Organic Milk", brand="Happy Farms", size="1 gal")
        )
        vision = _vision(analysis=ProductAnalysis(metadata=sample_metadata, confidence=0.9))

        result = await VisualAnalysisTier(vision, products, sleep=fake_sleep).execute(_state("B42"))

        assert result.product.id == saved.id
        assert result.product.barcode == "B42"
        assert result.warning is None

    @pytest.mark.asyncio
    async def test_unnamed_analysis_gets_placeholder(self, products, fake_sleep):
        vision = _vision(analysis=ProductAnalysis(metadata=ProductMetadata(size="1 L"), confidence=0.7))
        result = await VisualAnalysisTier(vision, products, sleep=fake_sleep).execute(_state())
        assert result.product.name == "Unknown Product"
