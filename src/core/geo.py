# src/core/geo.py — v1
"""Great-circle distance and coordinate validation for the store registry."""

from __future__ import annotations

import math

from shelfscan.core.errors import ErrorCode, ErrorSource, validation_error

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def validate_coordinates(
    latitude: float, longitude: float, source: ErrorSource = ErrorSource.REGISTRY
) -> None:
    """Raise a non-recoverable OrchestratorError for out-of-range coordinates."""
    if latitude is None or math.isnan(latitude) or not -90.0 <= latitude <= 90.0:
        raise validation_error(
            ErrorCode.INVALID_LATITUDE,
            f"Latitude must be within [-90, 90], got {latitude}",
            source,
            latitude=latitude,
        )
    if longitude is None or math.isnan(longitude) or not -180.0 <= longitude <= 180.0:
        raise validation_error(
            ErrorCode.INVALID_LONGITUDE,
            f"Longitude must be within [-180, 180], got {longitude}",
            source,
            longitude=longitude,
        )


def validate_radius(radius_m: float, source: ErrorSource = ErrorSource.REGISTRY) -> None:
    if radius_m is None or math.isnan(radius_m) or radius_m <= 0:
        raise validation_error(
            ErrorCode.INVALID_RADIUS,
            f"Radius must be > 0, got {radius_m}",
            source,
            radius_m=radius_m,
        )
