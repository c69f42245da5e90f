# src/discovery/__init__.py — v1
"""Barcode discovery through the Barcode Lookup API (Tier 3)."""
