# src/api/facade.py — v3
"""Public API facade: wires settings into a ready ScanOrchestrator.

Usage:
    from shelfscan.api.facade import build_services
    services = build_services()
    try:
        result = await services.orchestrator.process_scan(request)
    finally:
        await services.aclose()

One-shot helpers `scan` and `report_error` do the same for a single call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from shelfscan.cache.cache_factory import create_cache_store
from shelfscan.cache.service import DocumentCache
from shelfscan.config.settings import Settings
from shelfscan.core.models import ErrorReport, ErrorReportResponse, ScanRequest, ScanResult
from shelfscan.discovery.barcode_lookup_client import BarcodeLookupClient
from shelfscan.discovery.discovery_service import DiscoveryService
from shelfscan.insights.insights_service import InsightsService
from shelfscan.orchestrator.correction import CorrectionLoop
from shelfscan.orchestrator.scan_orchestrator import ScanOrchestrator
from shelfscan.pipeline.identification_pipeline import IdentificationPipeline
from shelfscan.pipeline.tiers.base_tier import BaseTier
from shelfscan.pipeline.tiers.direct_lookup import DirectLookupTier
from shelfscan.pipeline.tiers.discovery import DiscoveryTier
from shelfscan.pipeline.tiers.text_extraction import TextExtractionTier
from shelfscan.pipeline.tiers.visual_analysis import VisualAnalysisTier
from shelfscan.registry.database import RegistryDatabase
from shelfscan.registry.inventory_registry import InventoryRegistry
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.registry.reports import ScanLedger
from shelfscan.registry.store_registry import StoreRegistry
from shelfscan.resilience.circuit_breaker import CircuitBreaker
from shelfscan.resilience.guard import ServiceGuard
from shelfscan.resilience.rate_limiter import RateLimiter
from shelfscan.resilience.retry import RetryPolicy, SleepFn
from shelfscan.vision.vision_service import VisionService

if TYPE_CHECKING:
    from shelfscan.cache.base_cache_store import BaseCacheStore
    from shelfscan.llm.base_client import BaseLLMClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived collaborator of one process, for reuse and shutdown."""

    settings: Settings
    database: RegistryDatabase
    cache: DocumentCache
    products: ProductRegistry
    stores: StoreRegistry
    inventory: InventoryRegistry
    ledger: ScanLedger
    pipeline: IdentificationPipeline
    orchestrator: ScanOrchestrator
    lookup_client: BarcodeLookupClient
    insights: InsightsService | None = None

    async def aclose(self) -> None:
        await self.lookup_client.aclose()
        self.cache.backend.close()
        self.database.close()


def _guard(name: str, settings: Settings, retry: RetryPolicy, sleep: SleepFn) -> ServiceGuard:
    return ServiceGuard(
        name,
        rate_limiter=RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_s),
        circuit_breaker=CircuitBreaker(
            settings.circuit_failure_threshold, settings.circuit_reset_timeout_s, name=name
        ),
        retry_policy=retry,
        sleep=sleep,
    )


def build_services(
    settings: Settings | None = None,
    *,
    cache_store: BaseCacheStore | None = None,
    vision_client: BaseLLMClient | None = None,
    http_client: httpx.AsyncClient | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> Services:
    """Composition root.

    Args:
        settings: Application settings. Loaded from .env if None.
        cache_store: Cache backend. Built from settings if None.
        vision_client: Vision provider client. Built from settings if None;
            without one (and without an API key) the image tiers are disabled.
        http_client: HTTP client for barcode discovery.
        sleep: Backoff sleep, injectable for tests.
    """
    settings = settings or Settings()
    retry = RetryPolicy(settings.retry_max_attempts, settings.retry_base_delay_s)

    database = RegistryDatabase(settings.registry_db_path)
    products = ProductRegistry(database)
    stores = StoreRegistry(database, proximity_m=settings.store_proximity_m)
    inventory = InventoryRegistry(database)
    ledger = ScanLedger(database)

    cache = DocumentCache(
        cache_store or create_cache_store(settings),
        default_ttl_days=settings.cache_ttl_discovery_days,
        retry_policy=retry,
        sleep=sleep,
    )

    lookup_client = BarcodeLookupClient(
        settings.barcode_lookup_api_key,
        base_url=settings.barcode_lookup_base_url,
        timeout_s=settings.discovery_timeout_s,
        guard=_guard("barcode_lookup", settings, retry, sleep),
        http_client=http_client,
    )
    discovery = DiscoveryService(
        lookup_client,
        products,
        cache,
        ttl_days=settings.cache_ttl_for_tier(3),
        retry_policy=retry,
        sleep=sleep,
    )

    if vision_client is None and settings.vision_api_key:
        from shelfscan.llm.client_factory import create_vision_client

        vision_client = create_vision_client(settings)

    tiers: list[BaseTier] = [DirectLookupTier(cache, products, retry, sleep)]
    reanalysis = None
    vision: VisionService | None = None
    if vision_client is not None:
        vision = VisionService(
            vision_client,
            guard=_guard(f"vision:{vision_client.provider_name}", settings, retry, sleep),
            max_tokens=settings.vision_max_tokens,
            call_spacing_s=settings.vision_call_spacing_s,
            sleep=sleep,
        )
        reanalysis = VisualAnalysisTier(
            vision,
            products,
            min_confidence=settings.min_confidence,
            timeout_s=settings.tier4_timeout_s,
            retry_policy=retry,
            sleep=sleep,
        )
        tiers.extend(
            [
                TextExtractionTier(
                    vision, products, timeout_s=settings.tier2_timeout_s,
                    retry_policy=retry, sleep=sleep,
                ),
                DiscoveryTier(discovery, enabled=settings.discovery_enabled),
                reanalysis,
            ]
        )
    else:
        logger.warning(
            "No %s API key configured; image tiers disabled", settings.vision_provider
        )
    for tier in tiers:
        tier.warning_threshold = settings.low_confidence_warning

    pipeline = IdentificationPipeline(tiers)
    insights = None
    if settings.insights_enabled:
        insights = InsightsService(
            cache,
            vision,
            ttl_days=settings.insights_ttl_days,
            timeout_s=settings.insights_timeout_s,
        )
    correction = CorrectionLoop(
        cache, products, ledger, reanalysis=reanalysis, retry_policy=retry, sleep=sleep
    )
    orchestrator = ScanOrchestrator(
        cache=cache,
        products=products,
        stores=stores,
        inventory=inventory,
        ledger=ledger,
        pipeline=pipeline,
        correction=correction,
        insights=insights,
        ttl_for_tier=settings.cache_ttl_for_tier,
        retry_policy=retry,
        unknown_store_name=settings.unknown_store_name,
        sleep=sleep,
    )
    return Services(
        settings=settings,
        database=database,
        cache=cache,
        products=products,
        stores=stores,
        inventory=inventory,
        ledger=ledger,
        pipeline=pipeline,
        orchestrator=orchestrator,
        lookup_client=lookup_client,
        insights=insights,
    )


async def scan(request: ScanRequest, settings: Settings | None = None) -> ScanResult:
    """Process one scan with freshly built services."""
    services = build_services(settings)
    try:
        return await services.orchestrator.process_scan(request)
    finally:
        await services.aclose()


async def report_error(report: ErrorReport, settings: Settings | None = None) -> ErrorReportResponse:
    """Submit one error report with freshly built services."""
    services = build_services(settings)
    try:
        return await services.orchestrator.report_error(report)
    finally:
        await services.aclose()
