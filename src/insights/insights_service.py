# src/insights/insights_service.py — v1
"""Cache-first product insights.

Insights are keyed by registry product id, so every scan that lands on
the same product (any barcode, any photo) shares one analysis until it
expires or the product is invalidated. A fresh analysis needs the scan
image and a vision client; without them only cached insights are served.

Insights never fail a scan: every failure comes back as a Failed outcome.
"""

from __future__ import annotations

import logging
from typing import Callable

from shelfscan.cache.service import INSIGHTS_TTL_DAYS, DocumentCache
from shelfscan.core.models import ImagePayload, ProductInsights, ProductSnapshot, utcnow
from shelfscan.core.outcome import Failed, Ok, Outcome
from shelfscan.vision.vision_service import VisionService

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


class InsightsService:
    def __init__(
        self,
        cache: DocumentCache,
        vision: VisionService | None = None,
        ttl_days: int = INSIGHTS_TTL_DAYS,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        clock: Callable = utcnow,
    ) -> None:
        self._cache = cache
        self._vision = vision
        self._ttl_days = ttl_days
        self._timeout_s = timeout_s
        self._clock = clock

    async def insights_for(
        self, product: ProductSnapshot, image: ImagePayload | None = None
    ) -> Outcome[ProductInsights | None]:
        """Insights for an identified product.

        Returns:
            Ok(insights) from cache or a fresh analysis, Ok(None) when
            nothing is cached and no analysis is possible, Failed when the
            analysis was attempted and did not succeed.
        """
        if not product.id:
            return Ok(None)

        cached = await self._cache.lookup_insights(product.id)
        if isinstance(cached, Ok) and cached.value is not None:
            logger.info("Insights cache hit for %s", product.id)
            return Ok(cached.value.insights.model_copy(update={"cached": True}))

        if image is None or self._vision is None:
            logger.debug("No insights for %s: nothing cached and no image to analyze", product.id)
            return Ok(None)

        try:
            analysis = await self._vision.analyze_dimensions(image, product, timeout_s=self._timeout_s)
        except Exception as exc:
            logger.warning("Insights analysis failed for %s: %s", product.id, exc)
            return Failed(exc)

        insights = ProductInsights(
            product_id=product.id,
            analyzed_at=self._clock(),
            cached=False,
            **analysis.model_dump(),
        )
        await self._cache.store_insights(insights, ttl_days=self._ttl_days)
        return Ok(insights)
