# src/registry/__init__.py — v1
"""Product registry: products, stores, sightings, reports and scan logs."""
