# src/core/similarity.py — v3
"""Word-set similarity used to re-rank discovery candidates."""

from __future__ import annotations


def word_set(text: str | None) -> set[str]:
    """Lower-cased, whitespace-tokenized word set."""
    if not text:
        return set()
    return set(text.lower().split())


def jaccard_similarity(a: str | None, b: str | None) -> float:
    """Jaccard similarity (|A ∩ B| / |A ∪ B|) of two word sets.

    Returns 0.0 when both strings are empty.
    """
    words_a = word_set(a)
    words_b = word_set(b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)
