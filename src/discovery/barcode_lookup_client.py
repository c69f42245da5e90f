# src/discovery/barcode_lookup_client.py — v1
"""Barcode Lookup API client used by Tier 3 discovery.

`GET {base_url}/products?search=<terms>` with a bearer token. Every call
goes through a ServiceGuard; a 429 answer is retried after the server's
Retry-After delay.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from shelfscan.core.errors import ErrorCode, ErrorSource, OrchestratorError
from shelfscan.core.models import DiscoveryCandidate, ProductMetadata
from shelfscan.resilience.guard import ServiceGuard

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.barcodelookup.com/v3"


class RateLimitedResponse(httpx.HTTPStatusError):
    """HTTP 429 from the API; `retry_after_s` is the server's requested wait."""

    def __init__(self, response: httpx.Response, retry_after_s: float | None) -> None:
        super().__init__(
            f"Barcode Lookup API rate limited (429), retry after {retry_after_s}s",
            request=response.request,
            response=response,
        )
        self.retry_after_s = retry_after_s


def build_search_query(metadata: ProductMetadata) -> str:
    """Product name, brand and size joined by spaces."""
    terms = [metadata.product_name, metadata.brand_name, metadata.size]
    return " ".join(t.strip() for t in terms if t and t.strip())


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth parsing here; fall back to backoff.
        return None


class BarcodeLookupClient:
    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 8.0,
        guard: ServiceGuard | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/")
        self._guard = guard or ServiceGuard("barcode_lookup")
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)
        if not self._api_key:
            logger.warning("Barcode Lookup API key not configured; discovery disabled")

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def guard(self) -> ServiceGuard:
        return self._guard

    async def search_products(self, metadata: ProductMetadata) -> list[DiscoveryCandidate]:
        """Candidates matching the metadata's name, brand and size.

        Raises:
            OrchestratorError: DISCOVERY_NOT_CONFIGURED without an API key,
                INVALID_REQUEST when the metadata has no search terms,
                CIRCUIT_OPEN / RATE_LIMITED when the guard refuses the call.
            httpx.HTTPError: When the API keeps failing after retries.
        """
        if not self._api_key:
            raise OrchestratorError(
                ErrorCode.DISCOVERY_NOT_CONFIGURED,
                "Barcode Lookup API key is not configured",
                ErrorSource.IDENTIFICATION_PIPELINE,
                recoverable=False,
            )
        query = build_search_query(metadata)
        if not query:
            raise OrchestratorError(
                ErrorCode.INVALID_REQUEST,
                "No search terms available in metadata",
                ErrorSource.IDENTIFICATION_PIPELINE,
            )

        logger.info("Barcode Lookup search: %r", query)
        payload = await self._guard.call(lambda: self._get_products(query), label="barcode_lookup.search")
        candidates = self._parse_candidates(payload)
        logger.info("Barcode Lookup returned %d candidate(s)", len(candidates))
        return candidates

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get_products(self, query: str) -> dict[str, Any]:
        response = await self._http.get(
            f"{self._base_url}/products",
            params={"search": query},
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Accept": "application/json",
            },
        )
        if response.status_code == 429:
            raise RateLimitedResponse(response, _parse_retry_after(response.headers.get("Retry-After")))
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _parse_candidates(payload: dict[str, Any]) -> list[DiscoveryCandidate]:
        candidates: list[DiscoveryCandidate] = []
        for item in payload.get("products") or []:
            try:
                candidates.append(DiscoveryCandidate.model_validate(item))
            except ValidationError as exc:
                logger.debug("Skipping malformed discovery candidate: %s", exc)
        return candidates
