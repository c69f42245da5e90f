# src/llm/__init__.py — v2
"""Vision-model clients behind a provider-neutral interface."""
