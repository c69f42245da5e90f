# src/insights/__init__.py — v1
"""Product insights: five scored dimensions attached to identified products."""
