# src/core/barcodes.py — v1
"""Barcode format validation for discovery candidates.

Unknown formats are rejected, as are empty barcodes.
"""

from __future__ import annotations

import re
from enum import Enum


class BarcodeFormat(str, Enum):
    UPC_A = "UPC-A"
    UPC_E = "UPC-E"
    EAN_8 = "EAN-8"
    EAN_13 = "EAN-13"
    CODE_39 = "Code-39"
    CODE_93 = "Code-93"
    CODE_128 = "Code-128"
    ITF = "ITF"
    QR = "QR"


_LINEAR_CHARSET = re.compile(r"^[A-Z0-9\-.$/+%\s]+$")

_PATTERNS: dict[BarcodeFormat, re.Pattern[str]] = {
    BarcodeFormat.UPC_A: re.compile(r"^[0-9]{12}$"),
    BarcodeFormat.UPC_E: re.compile(r"^[0-9]{6,8}$"),
    BarcodeFormat.EAN_8: re.compile(r"^[0-9]{8}$"),
    BarcodeFormat.EAN_13: re.compile(r"^[0-9]{13}$"),
    BarcodeFormat.CODE_39: _LINEAR_CHARSET,
    BarcodeFormat.CODE_93: _LINEAR_CHARSET,
    BarcodeFormat.CODE_128: _LINEAR_CHARSET,
}


def parse_format(fmt: str | None) -> BarcodeFormat | None:
    """Map a format label to BarcodeFormat, or None if unsupported."""
    if not fmt:
        return None
    try:
        return BarcodeFormat(fmt)
    except ValueError:
        return None


def is_valid_barcode(barcode: str | None, fmt: str | BarcodeFormat | None) -> bool:
    """Check `barcode` against the character rules of its declared format."""
    if not barcode:
        return False
    parsed = fmt if isinstance(fmt, BarcodeFormat) else parse_format(fmt)
    if parsed is None:
        return False
    if parsed is BarcodeFormat.ITF:
        return barcode.isascii() and barcode.isdigit() and len(barcode) % 2 == 0
    if parsed is BarcodeFormat.QR:
        return True
    return _PATTERNS[parsed].fullmatch(barcode) is not None
