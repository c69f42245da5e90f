# tests/conftest.py — v2
"""Shared test fixtures for the unit tests.

Provides a temp registry database, a SQLite cache, sample products and a
mock vision client. No external dependencies: all network I/O is mocked
and backoff sleeps are recorded instead of awaited.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from shelfscan.cache.service import DocumentCache
from shelfscan.cache.sqlite_store import SqliteCacheStore
from shelfscan.core.models import ImagePayload, ProductMetadata, ProductSnapshot
from shelfscan.llm.models import LLMResponse
from shelfscan.registry.database import RegistryDatabase
from shelfscan.registry.inventory_registry import InventoryRegistry
from shelfscan.registry.product_registry import ProductRegistry
from shelfscan.registry.reports import ScanLedger
from shelfscan.registry.store_registry import StoreRegistry
from shelfscan.resilience.retry import RetryPolicy


class MutableClock:
    """Callable clock whose current time tests can move forward."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# === FIXTURES: Resilience ===


@pytest.fixture
def fake_sleep() -> AsyncMock:
    """Records backoff delays without waiting."""
    return AsyncMock(return_value=None)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_s=1.0)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


# === FIXTURES: Registry ===


@pytest.fixture
def registry_db(tmp_path: Path):
    db = RegistryDatabase(tmp_path / "registry.db")
    yield db
    db.close()


@pytest.fixture
def products(registry_db: RegistryDatabase) -> ProductRegistry:
    return ProductRegistry(registry_db)


@pytest.fixture
def stores(registry_db: RegistryDatabase) -> StoreRegistry:
    return StoreRegistry(registry_db)


@pytest.fixture
def inventory(registry_db: RegistryDatabase) -> InventoryRegistry:
    return InventoryRegistry(registry_db)


@pytest.fixture
def ledger(registry_db: RegistryDatabase) -> ScanLedger:
    return ScanLedger(registry_db)


# === FIXTURES: Cache ===


@pytest.fixture
def cache_store(tmp_path: Path):
    store = SqliteCacheStore(tmp_path / "cache.db")
    yield store
    store.close()


@pytest.fixture
def cache(cache_store: SqliteCacheStore, clock: MutableClock, fake_sleep: AsyncMock) -> DocumentCache:
    return DocumentCache(cache_store, clock=clock, sleep=fake_sleep)


# === FIXTURES: Sample data ===


@pytest.fixture
def sample_snapshot() -> ProductSnapshot:
    """Registry-less snapshot of a typical grocery product."""
    return ProductSnapshot(
        barcode="012345678901",
        name="Organic Milk",
        brand="Happy Farms",
        size="1 gal",
        category="Dairy",
    )


@pytest.fixture
def sample_metadata() -> ProductMetadata:
    return ProductMetadata(
        product_name="Organic Milk",
        brand_name="Happy Farms",
        size="1 gal",
        category="Dairy",
        keywords=["organic", "milk"],
    )


@pytest.fixture
def sample_image() -> ImagePayload:
    return ImagePayload(data=b"\xff\xd8\xff\xe0fake-jpeg-bytes", media_type="image/jpeg")


# === FIXTURES: Mock vision client ===


@pytest.fixture
def mock_llm_response() -> LLMResponse:
    return LLMResponse(
        content="Product Name: Organic Milk\nBrand: Happy Farms\nSize: 1 gal",
        input_tokens=120,
        output_tokens=30,
        model="mock-vision",
        provider="mock",
        latency_ms=250,
    )


@pytest.fixture
def mock_vision_client(mock_llm_response: LLMResponse) -> AsyncMock:
    """Mock BaseLLMClient with a default text-extraction reply."""
    client = AsyncMock()
    client.complete_with_vision = AsyncMock(return_value=mock_llm_response)
    client.provider_name = "mock"
    client.model = "mock-vision"
    return client
