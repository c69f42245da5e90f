# tests/unit/pipeline/test_identification_pipeline.py — v1
"""Tests for pipeline/identification_pipeline.py and pipeline/state.py — escalation rules."""

from __future__ import annotations

import hashlib

import pytest

from shelfscan.core.errors import ErrorCode
from shelfscan.core.models import (
    IdentificationKey,
    ImagePayload,
    ProductSnapshot,
    ScanRequest,
    TierError,
    TierResult,
)
from shelfscan.pipeline.identification_pipeline import IdentificationPipeline
from shelfscan.pipeline.state import PipelineState
from shelfscan.pipeline.tiers.base_tier import BaseTier

MILK = ProductSnapshot(id="P1", name="Organic Milk")


class ScriptedTier(BaseTier):
    """Tier returning a fixed result (or raising) and recording its calls."""

    def __init__(self, tier: int, result: TierResult | Exception | None = None, applies: bool = True):
        self.tier = tier
        self.name = f"scripted{tier}"
        self.error_code = "SCRIPTED_FAILED"
        self._result = result or TierResult(tier=tier, success=False)
        self._applies = applies
        self.calls = 0

    def applies(self, state: PipelineState) -> bool:
        return self._applies

    async def run(self, state: PipelineState) -> TierResult:
        self.calls += 1
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


REQUEST = ScanRequest(barcode="012345678901", user_id="u1")


class TestPipelineState:
    def test_fingerprint_computed_from_image(self):
        request = ScanRequest(image=ImagePayload(data=b"jpeg"))
        state = PipelineState.for_request(request)
        assert state.image_fingerprint == hashlib.sha256(b"jpeg").hexdigest()
        assert state.has_image is True

    def test_request_fingerprint_wins(self):
        request = ScanRequest(image=ImagePayload(data=b"jpeg"), image_fingerprint="F1")
        assert PipelineState.for_request(request).image_fingerprint == "F1"

    def test_cache_keys_barcode_first(self):
        state = PipelineState.for_request(ScanRequest(barcode="B1", image_fingerprint="F1"))
        assert [k.storage_key for k in state.cache_keys()] == ["barcode:B1", "image_fingerprint:F1"]

    def test_consulted_keys(self):
        state = PipelineState.for_request(REQUEST, [IdentificationKey.barcode("012345678901")])
        assert state.consulted_keys == {"barcode:012345678901"}
        assert state.has_image is False


class TestEscalation:
    @pytest.mark.asyncio
    async def test_stops_at_first_success(self):
        t1 = ScriptedTier(1)
        t2 = ScriptedTier(2, TierResult(tier=2, success=True, product=MILK, confidence=0.9))
        t4 = ScriptedTier(4)
        result = await IdentificationPipeline([t4, t2, t1]).run(REQUEST)

        assert result.success is True
        assert result.final.product.id == "P1"
        assert result.tiers_attempted == [1, 2]
        assert t4.calls == 0

    @pytest.mark.asyncio
    async def test_skipped_tiers_not_attempted(self):
        t1 = ScriptedTier(1)
        t2 = ScriptedTier(2, applies=False)
        t4 = ScriptedTier(4, TierResult(tier=4, success=True, product=MILK, confidence=0.7))
        result = await IdentificationPipeline([t1, t2, t4]).run(REQUEST)
        assert result.tiers_attempted == [1, 4]
        assert t2.calls == 0

    @pytest.mark.asyncio
    async def test_retake_stops_escalation(self):
        retake = TierResult(tier=2, success=False, retake_required=True, confidence=0.4)
        t3 = ScriptedTier(3)
        result = await IdentificationPipeline([ScriptedTier(2, retake), t3]).run(REQUEST)
        assert result.retake_required is True
        assert result.success is False
        assert t3.calls == 0

    @pytest.mark.asyncio
    async def test_retryable_error_escalates(self):
        t2 = ScriptedTier(2, ConnectionError("vision endpoint unreachable"))
        t4 = ScriptedTier(4, TierResult(tier=4, success=True, product=MILK, confidence=0.8))
        result = await IdentificationPipeline([t2, t4]).run(REQUEST)
        assert result.success is True
        assert result.results[0].error.code == "SCRIPTED_FAILED"
        assert result.results[0].error.retryable is True

    @pytest.mark.asyncio
    async def test_non_retryable_error_aborts(self):
        fatal = TierResult(
            tier=1,
            success=False,
            error=TierError(code=ErrorCode.INVALID_NAME, message="bad", tier=1, retryable=False),
        )
        t2 = ScriptedTier(2)
        result = await IdentificationPipeline([ScriptedTier(1, fatal), t2]).run(REQUEST)
        assert result.aborted_error.code == ErrorCode.INVALID_NAME
        assert t2.calls == 0

    @pytest.mark.asyncio
    async def test_all_tiers_miss(self):
        result = await IdentificationPipeline([ScriptedTier(1), ScriptedTier(2)]).run(REQUEST)
        assert result.success is False
        assert result.retake_required is False
        assert result.aborted_error is None
        assert result.tiers_attempted == [1, 2]

    @pytest.mark.asyncio
    async def test_no_applicable_tiers(self):
        result = await IdentificationPipeline([ScriptedTier(2, applies=False)]).run(REQUEST)
        assert result.final is None
        assert result.tiers_attempted == []


class TestBaseTier:
    def test_low_confidence_warning(self):
        tier = ScriptedTier(4)
        assert tier.hit(0.75, product=MILK).warning == "Low confidence identification (0.75)"
        assert tier.hit(0.85, product=MILK).warning is None

    @pytest.mark.asyncio
    async def test_execute_records_timing_on_failure(self):
        result = await ScriptedTier(2, RuntimeError("boom")).execute(PipelineState.for_request(REQUEST))
        assert result.success is False
        assert result.error.message == "boom"
        assert result.processing_time_ms >= 0
