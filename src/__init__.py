# src/__init__.py — v1
"""shelfscan: cache-first, multi-tier product identification."""

from shelfscan.version import __version__

__all__ = ["__version__"]
