# src/core/errors.py — v1
"""Error taxonomy shared by the cache, registry, pipeline and orchestrator.

Every caller-visible failure is an OrchestratorError carrying a stable
`code`, the subsystem it came from and whether retrying later may help.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorSource(str, Enum):
    """Subsystem an OrchestratorError originated from."""

    CACHE = "cache"
    REGISTRY = "registry"
    IDENTIFICATION_PIPELINE = "identification_pipeline"
    GEOLOCATION = "geolocation"


class ErrorCode:
    """Stable error codes surfaced to callers and written to scan logs."""

    # Validation
    INVALID_LATITUDE = "INVALID_LATITUDE"
    INVALID_LONGITUDE = "INVALID_LONGITUDE"
    INVALID_RADIUS = "INVALID_RADIUS"
    INVALID_NAME = "INVALID_NAME"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_PRODUCT_ID = "INVALID_PRODUCT_ID"
    INVALID_STORE_ID = "INVALID_STORE_ID"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Data integrity
    NO_PRODUCTS_FOUND = "NO_PRODUCTS_FOUND"
    FOREIGN_KEY_VIOLATION = "FOREIGN_KEY_VIOLATION"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"

    # Dependency exhaustion
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    RATE_LIMITED = "RATE_LIMITED"
    DISCOVERY_NOT_CONFIGURED = "DISCOVERY_NOT_CONFIGURED"

    # Storage / pipeline failures
    PRODUCT_SAVE_FAILED = "PRODUCT_SAVE_FAILED"
    REGISTRY_QUERY_FAILED = "REGISTRY_QUERY_FAILED"
    STORE_LOOKUP_FAILED = "STORE_LOOKUP_FAILED"
    SIGHTING_FAILED = "SIGHTING_FAILED"
    REPORT_SAVE_FAILED = "REPORT_SAVE_FAILED"
    TEXT_EXTRACTION_FAILED = "TEXT_EXTRACTION_FAILED"
    DISCOVERY_FAILED = "DISCOVERY_FAILED"
    IMAGE_ANALYSIS_FAILED = "IMAGE_ANALYSIS_FAILED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"


class OrchestratorError(Exception):
    """Structured failure raised by the registry and the scan orchestrator."""

    def __init__(
        self,
        code: str,
        message: str,
        source: ErrorSource,
        recoverable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.source = source
        self.recoverable = recoverable
        self.context = context or {}
        super().__init__(f"[{source.value}:{code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        """Serializable view for logs and caller-facing error payloads."""
        return {
            "code": self.code,
            "message": self.message,
            "source": self.source.value,
            "recoverable": self.recoverable,
            "context": self.context,
        }


def validation_error(code: str, message: str, source: ErrorSource = ErrorSource.REGISTRY, **context: Any) -> OrchestratorError:
    """Build a non-recoverable validation failure."""
    return OrchestratorError(code, message, source, recoverable=False, context=context)
