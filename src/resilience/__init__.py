# src/resilience/__init__.py — v1
"""Retry executor, transience classification, rate limiter and circuit breaker."""
