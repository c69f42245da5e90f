# src/vision/__init__.py — v2
"""Vision capability: text extraction, structured product analysis and dimension scoring."""
