# src/api/__init__.py — v1
"""Programmatic entry point: wiring of the scan services."""
