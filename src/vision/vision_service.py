# src/vision/vision_service.py — v2
"""Vision capability used by the identification tiers.

Three modes over the same provider client:
- extract_text: OCR-style transcription of the packaging (Tier 2),
- analyze_product: structured JSON description with a confidence (Tier 4),
- analyze_dimensions: five scored dimensions for product insights.

Calls go through a ServiceGuard (breaker, limiter, retry). An optional
spacing delay keeps consecutive calls apart for providers with tight
per-second quotas.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, Field, ValidationError

from shelfscan.core.models import (
    DimensionAnalysis,
    DimensionScore,
    ImagePayload,
    ProductMetadata,
    ProductSnapshot,
    VisualCharacteristics,
)
from shelfscan.llm.base_client import BaseLLMClient
from shelfscan.llm.models import ImageInput, Message
from shelfscan.resilience.guard import ServiceGuard
from shelfscan.resilience.retry import SleepFn

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.6

EXTRACT_TEXT_PROMPT = """Extract all visible text from this product packaging image. List the text you see, focusing on:
- Product name
- Brand name
- Size/quantity (e.g., "12 oz", "500g")
- Any other visible text

Format your response as:
Product Name: [name]
Brand: [brand]
Size: [size]
Other text: [any other visible text]

Be concise and accurate."""

ANALYZE_PRODUCT_PROMPT = """Analyze this product image and provide detailed information in JSON format:

{
  "productName": "Full product name",
  "brandName": "Brand name",
  "size": "Size or quantity (e.g., '12 oz', '500g')",
  "category": "Product category (e.g., 'Beverages', 'Snacks', 'Dairy')",
  "keywords": ["keyword1", "keyword2", "keyword3"],
  "visualCharacteristics": {
    "colors": ["primary color", "secondary color"],
    "packaging": "Type of packaging (e.g., 'bottle', 'box', 'can')",
    "shape": "Overall shape description"
  },
  "confidence": 0.85
}

Be as accurate as possible. Set confidence between 0.0 and 1.0 based on image clarity and your certainty.
Return ONLY the JSON object, no additional text."""

DIMENSIONS_PROMPT_TEMPLATE = """Analyze this product across 5 dimensions and return results in JSON format.

Product Context:
- Name: {name}
- Brand: {brand}
- Category: {category}

Analyze the following dimensions (score 0-100 for each):

1. Health: Nutritional value, beneficial ingredients, health impact
2. Processing and Preservatives: Level of processing, artificial additives, preservatives
3. Allergens: Common allergens present, cross-contamination risks
4. Responsibly Produced: Ethical sourcing, fair trade, labor practices
5. Environmental Impact: Packaging sustainability, carbon footprint, eco-friendliness

For each dimension, provide:
- score (0-100, where 100 is best)
- explanation (max 100 words)
- keyFactors (array of 2-4 key points)

Also provide an overallConfidence score (0.0-1.0) for the analysis.

Return JSON in this exact format:
{{
  "dimensions": {{
    "health": {{ "score": 0-100, "explanation": "...", "keyFactors": ["..."] }},
    "processing": {{ "score": 0-100, "explanation": "...", "keyFactors": ["..."] }},
    "allergens": {{ "score": 0-100, "explanation": "...", "keyFactors": ["..."] }},
    "responsiblyProduced": {{ "score": 0-100, "explanation": "...", "keyFactors": ["..."] }},
    "environmentalImpact": {{ "score": 0-100, "explanation": "...", "keyFactors": ["..."] }}
  }},
  "overallConfidence": 0.0-1.0
}}

Return ONLY the JSON object, no additional text."""

# Five explanations of up to 100 words do not fit the default budget.
DIMENSIONS_MAX_TOKENS = 2048

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)
_BARE_JSON = re.compile(r"\{.*\}", re.DOTALL)

M = TypeVar("M", bound=BaseModel)


class VisionParseError(ValueError):
    """The model answered, but not with usable JSON."""


class _RawAnalysis(BaseModel):
    productName: str | None = None
    brandName: str | None = None
    size: str | None = None
    category: str | None = None
    keywords: list[str] = Field(default_factory=list)
    visualCharacteristics: VisualCharacteristics | None = None
    confidence: float = 0.0


class _RawDimension(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    explanation: str = Field(min_length=1)
    keyFactors: list[str] = Field(min_length=1)


class _RawDimensions(BaseModel):
    health: _RawDimension
    processing: _RawDimension
    allergens: _RawDimension
    responsiblyProduced: _RawDimension
    environmentalImpact: _RawDimension


class _RawDimensionReply(BaseModel):
    dimensions: _RawDimensions
    overallConfidence: float = Field(ge=0.0, le=1.0)


class ProductAnalysis(BaseModel):
    """Parsed result of a full product analysis."""

    metadata: ProductMetadata
    confidence: float = Field(ge=0.0, le=1.0)


def is_confidence_sufficient(confidence: float, threshold: float = DEFAULT_MIN_CONFIDENCE) -> bool:
    return confidence >= threshold


def _parse_reply(text: str, model: type[M]) -> M:
    """Validate the JSON object in a model reply (fenced or bare) against `model`."""
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    if match is None:
        raise VisionParseError("No JSON object in vision response")
    payload = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    try:
        return model.model_validate(json.loads(payload))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise VisionParseError(f"Unreadable vision response: {exc}") from exc


def parse_analysis(text: str) -> ProductAnalysis:
    """Parse the product analysis out of a model reply; confidence is clamped."""
    raw = _parse_reply(text, _RawAnalysis)

    metadata = ProductMetadata(
        product_name=raw.productName or None,
        brand_name=raw.brandName or None,
        size=raw.size or None,
        category=raw.category or None,
        keywords=raw.keywords,
        visual_characteristics=raw.visualCharacteristics,
    )
    return ProductAnalysis(metadata=metadata, confidence=max(0.0, min(1.0, raw.confidence)))


def parse_dimensions(text: str) -> DimensionAnalysis:
    """Parse a dimension reply.

    Unlike parse_analysis nothing is clamped: a score outside 0-100, a
    confidence outside 0-1, a missing dimension, an empty explanation or
    an empty keyFactors list makes the whole reply unusable.
    """
    raw = _parse_reply(text, _RawDimensionReply)

    def _score(dimension: _RawDimension) -> DimensionScore:
        return DimensionScore(
            score=dimension.score,
            explanation=dimension.explanation,
            key_factors=dimension.keyFactors,
        )

    dims = raw.dimensions
    return DimensionAnalysis(
        health=_score(dims.health),
        processing=_score(dims.processing),
        allergens=_score(dims.allergens),
        responsibly_produced=_score(dims.responsiblyProduced),
        environmental_impact=_score(dims.environmentalImpact),
        overall_confidence=raw.overallConfidence,
    )


class VisionService:
    def __init__(
        self,
        client: BaseLLMClient,
        guard: ServiceGuard | None = None,
        max_tokens: int = 1024,
        call_spacing_s: float = 0.0,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._guard = guard or ServiceGuard(f"vision:{client.provider_name}", sleep=sleep)
        self._max_tokens = max_tokens
        self._call_spacing_s = call_spacing_s
        self._sleep = sleep
        self._clock = clock
        self._last_call_at: float | None = None
        self._spacing_lock = asyncio.Lock()

    @property
    def guard(self) -> ServiceGuard:
        return self._guard

    async def extract_text(self, image: ImagePayload, timeout_s: float | None = None) -> str:
        """Transcribe the visible packaging text."""
        response = await self._complete(image, EXTRACT_TEXT_PROMPT, 0.1, timeout_s, "vision.extract_text")
        logger.debug("Extracted text preview: %.100s", response)
        return response

    async def analyze_product(
        self, image: ImagePayload, timeout_s: float | None = None
    ) -> ProductAnalysis:
        """Full structured analysis; raises VisionParseError on an unusable reply."""
        response = await self._complete(
            image, ANALYZE_PRODUCT_PROMPT, 0.2, timeout_s, "vision.analyze_product"
        )
        analysis = parse_analysis(response)
        logger.info(
            "Vision analysis: %s (confidence %.2f)",
            analysis.metadata.product_name, analysis.confidence,
        )
        return analysis

    async def analyze_dimensions(
        self, image: ImagePayload, product: ProductSnapshot, timeout_s: float | None = None
    ) -> DimensionAnalysis:
        """Score `product` on the five insight dimensions; raises VisionParseError on an unusable reply."""
        prompt = DIMENSIONS_PROMPT_TEMPLATE.format(
            name=product.name,
            brand=product.brand or "Unknown",
            category=product.category or "Unknown",
        )
        response = await self._complete(
            image, prompt, 0.2, timeout_s, "vision.analyze_dimensions",
            max_tokens=max(self._max_tokens, DIMENSIONS_MAX_TOKENS),
        )
        analysis = parse_dimensions(response)
        logger.info(
            "Dimension analysis for %s (confidence %.2f)", product.id or product.name,
            analysis.overall_confidence,
        )
        return analysis

    async def _complete(
        self,
        image: ImagePayload,
        prompt: str,
        temperature: float,
        timeout_s: float | None,
        label: str,
        max_tokens: int | None = None,
    ) -> str:
        images = [ImageInput(data=image.data, media_type=image.media_type)]
        messages = [Message(role="user", content=prompt)]

        async def _call() -> Any:
            await self._wait_for_spacing()
            return await self._client.complete_with_vision(
                messages, images, max_tokens=max_tokens or self._max_tokens, temperature=temperature
            )

        response = await self._guard.call(_call, label=label, timeout_s=timeout_s)
        return response.content

    async def _wait_for_spacing(self) -> None:
        if self._call_spacing_s <= 0:
            return
        async with self._spacing_lock:
            if self._last_call_at is not None:
                remaining = self._call_spacing_s - (self._clock() - self._last_call_at)
                if remaining > 0:
                    logger.debug("Spacing vision calls, waiting %.2fs", remaining)
                    await self._sleep(remaining)
            self._last_call_at = self._clock()
