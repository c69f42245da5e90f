# src/cache/fingerprint.py — v3
"""Image fingerprinting for cache keys.

A fingerprint is the SHA-256 of the exact image bytes: two captures of
the same package only share a key if the bytes are identical.
"""

from __future__ import annotations

import hashlib

from shelfscan.core.models import IdentificationKey, ScanRequest


def compute_image_fingerprint(image_data: bytes) -> str:
    """Hex SHA-256 digest of raw image bytes."""
    if not image_data:
        raise ValueError("Cannot fingerprint empty image data")
    return hashlib.sha256(image_data).hexdigest()


def keys_for_request(request: ScanRequest) -> list[IdentificationKey]:
    """Cache keys to consult for a scan, barcode first.

    The request's own fingerprint wins over one computed from the image.
    """
    keys: list[IdentificationKey] = []
    if request.barcode:
        keys.append(IdentificationKey.barcode(request.barcode))
    fingerprint = request.image_fingerprint
    if not fingerprint and request.image is not None and request.image.data:
        fingerprint = compute_image_fingerprint(request.image.data)
    if fingerprint:
        keys.append(IdentificationKey.image_fingerprint(fingerprint))
    return keys
