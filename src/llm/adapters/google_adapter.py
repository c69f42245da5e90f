# src/llm/adapters/google_adapter.py — v2
"""Google Gemini adapter implementing BaseLLMClient.

Uses the google-generativeai SDK.
"""

from __future__ import annotations

import time
from typing import Any

from shelfscan.llm.base_client import BaseLLMClient
from shelfscan.llm.models import ImageInput, LLMResponse, Message


class GoogleAdapter(BaseLLMClient):
    """Google Gemini adapter."""

    def __init__(self, model: str = "gemini-2.0-flash", api_key: str | None = None) -> None:
        self._model = model
        self._api_key = api_key

    async def complete_with_vision(
        self,
        messages: list[Message],
        images: list[ImageInput],
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
    ) -> LLMResponse:
        try:
            import google.generativeai as genai
        except ImportError as e:
            raise ImportError(
                "google-generativeai package required: pip install shelfscan[google]"
            ) from e

        genai.configure(api_key=self._api_key or "")
        model = genai.GenerativeModel(self._model, system_instruction=system)

        parts: list[dict[str, Any]] = [
            {"inline_data": {"mime_type": img.media_type, "data": img.data}} for img in images
        ]
        parts.extend({"text": m.content} for m in messages)

        t0 = time.monotonic()
        resp = await model.generate_content_async(
            parts,
            generation_config={"max_output_tokens": max_tokens, "temperature": temperature},
        )
        latency = int((time.monotonic() - t0) * 1000)

        usage = getattr(resp, "usage_metadata", None)
        return LLMResponse(
            content=resp.text or "",
            input_tokens=getattr(usage, "prompt_token_count", 0) if usage else 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) if usage else 0,
            model=self._model,
            provider="google",
            latency_ms=latency,
            raw_response=resp,
        )

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def model(self) -> str:
        return self._model
