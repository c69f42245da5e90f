# src/logging/__init__.py — v1
"""Structured logging: formatters, rotating file handler, per-scan context."""
