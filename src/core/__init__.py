# src/core/__init__.py — v1
"""Domain models, error taxonomy and small shared helpers."""
