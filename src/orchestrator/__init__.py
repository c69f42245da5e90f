# src/orchestrator/__init__.py — v1
"""Scan orchestration and the error/correction loop."""
