# src/llm/adapters/__init__.py — v2
"""Provider adapters (anthropic, google)."""
