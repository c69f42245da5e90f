# src/pipeline/tiers/__init__.py — v1
"""Identification tiers, cheapest first."""
