# src/vision/text_parser.py — v1
"""Turn free-form OCR output into ProductMetadata.

Explicit ``Label: value`` lines (optionally markdown-bold) win; otherwise
the product name, brand, size and category are guessed from the shape of
the remaining lines.
"""

from __future__ import annotations

import re

from shelfscan.core.models import ProductMetadata

MAX_KEYWORDS = 10

_PREAMBLES = (
    re.compile(r"^Here'?s? the extracted text from the image:?\s*", re.IGNORECASE),
    re.compile(r"^Extracted text:?\s*", re.IGNORECASE),
    re.compile(r"^Text from image:?\s*", re.IGNORECASE),
)

STOP_WORDS = frozenset(
    "the and for with from this that are was were been have has had will would "
    "could should may can not but all you your our their its".split()
)


def _label(*names: str) -> re.Pattern[str]:
    alternatives = "|".join(names)
    return re.compile(
        rf"^[ \t]*(?:[*\-+][ \t]+)?(?:\*\*(?:{alternatives}):?\*\*|(?:{alternatives}):)[ \t]*(.+?)[ \t]*$",
        re.IGNORECASE | re.MULTILINE,
    )


_NAME_LABEL = _label("Product Name")
_BRAND_LABEL = _label("Brand", "Brand Name")
_SIZE_LABEL = _label("Size", "Quantity")

_MARKDOWN_BULLET = re.compile(r"^[*\-+]\s+")
_ANY_LABEL = re.compile(
    r"^\**(Product Name|Brand|Brand Name|Size|Quantity|Other text):", re.IGNORECASE
)
_HAS_LETTERS = re.compile(r"[a-zA-Z]")

SIZE_PATTERNS = (
    re.compile(r"(\d+\.?\d*)\s*(fl oz|fluid ounces?|oz|ounces?)\b", re.IGNORECASE),
    re.compile(r"(\d+\.?\d*)\s*(kg|kilograms?|g|grams?)\b", re.IGNORECASE),
    re.compile(r"(\d+\.?\d*)\s*(ml|milliliters?|l|liters?)\b", re.IGNORECASE),
    re.compile(r"(\d+\.?\d*)\s*(lbs?|pounds?)\b", re.IGNORECASE),
    re.compile(r"(\d+)\s*(count|ct|pack|pk)\b", re.IGNORECASE),
)

# First matching category wins; order matters ("milk" is a beverage).
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Beverages", ("drink", "beverage", "juice", "soda", "water", "coffee", "tea", "milk")),
    ("Snacks", ("chips", "crackers", "cookies", "snack", "popcorn", "pretzels")),
    ("Dairy", ("milk", "cheese", "yogurt", "butter", "cream", "dairy")),
    ("Bakery", ("bread", "bagel", "muffin", "cake", "pastry", "bakery")),
    ("Frozen", ("frozen", "ice cream", "popsicle")),
    ("Canned", ("canned", "can", "soup")),
    ("Cereal", ("cereal", "oatmeal", "granola", "breakfast")),
    ("Condiments", ("sauce", "ketchup", "mustard", "mayo", "dressing", "condiment")),
    ("Meat", ("meat", "beef", "chicken", "pork", "turkey", "sausage")),
    ("Produce", ("fruit", "vegetable", "produce", "fresh")),
    ("Household", ("cleaner", "detergent", "soap", "paper", "towel")),
    ("Personal Care", ("shampoo", "soap", "lotion", "deodorant", "toothpaste")),
)

_CATEGORY_PATTERNS = tuple(
    (category, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b"))
    for category, keywords in CATEGORY_KEYWORDS
)


def strip_preamble(text: str) -> str:
    cleaned = text.strip()
    for pattern in _PREAMBLES:
        cleaned = pattern.sub("", cleaned)
    return cleaned


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """First `limit` distinct lowercase words longer than two characters, stop words removed."""
    seen: dict[str, None] = {}
    for word in text.lower().split():
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
            if len(seen) == limit:
                break
    return list(seen)


def infer_category(text: str) -> str | None:
    lowered = text.lower()
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(lowered):
            return category
    return None


def infer_size(text: str) -> str | None:
    for pattern in SIZE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def _labelled(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if match:
        value = match.group(1).strip().strip("*").strip()
        return value or None
    return None


def _guess_name(lines: list[str]) -> str | None:
    for line in lines:
        words = line.split()
        if (
            2 <= len(words) <= 8
            and _HAS_LETTERS.search(line)
            and not _MARKDOWN_BULLET.match(line)
            and not _ANY_LABEL.match(line)
        ):
            return line
    return None


def _guess_brand(lines: list[str], product_name: str | None) -> str | None:
    for line in lines:
        if (
            len(line.split()) <= 3
            and line[:1].isupper()
            and not _MARKDOWN_BULLET.match(line)
            and not _ANY_LABEL.match(line)
        ):
            # Only the first candidate is considered.
            return line if line != product_name else None
    return None


def parse_text_to_metadata(text: str) -> ProductMetadata:
    """Parse OCR output into ProductMetadata; fields that cannot be found stay None."""
    cleaned = strip_preamble(text)
    lines = [line.strip() for line in cleaned.splitlines() if line.strip()]

    product_name = _labelled(_NAME_LABEL, cleaned) or _guess_name(lines)
    brand_name = _labelled(_BRAND_LABEL, cleaned) or _guess_brand(lines, product_name)
    size = _labelled(_SIZE_LABEL, cleaned) or infer_size(cleaned)

    return ProductMetadata(
        product_name=product_name,
        brand_name=brand_name,
        size=size,
        category=infer_category(cleaned),
        keywords=extract_keywords(cleaned),
    )
