# src/pipeline/__init__.py — v1
"""Identification pipeline: per-scan state and tier escalation."""
