# src/cache/__init__.py — v1
"""Document cache: TTL-keyed product snapshots over json, sqlite or redis backends."""
