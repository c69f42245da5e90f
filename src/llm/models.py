# src/llm/models.py — v2
"""Provider-neutral request/response types for vision completions."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ImageInput(BaseModel):
    """Raw image bytes plus their MIME type."""

    data: bytes
    media_type: str = "image/jpeg"


class LLMResponse(BaseModel):
    """Normalized response from any provider."""

    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str
    provider: str
    latency_ms: int
    raw_response: Any = None
