# src/llm/base_client.py — v2
"""Abstract vision-model client interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from shelfscan.llm.models import ImageInput, LLMResponse, Message


class BaseLLMClient(ABC):
    """Unified interface for the vision providers used by the identification tiers."""

    @abstractmethod
    async def complete_with_vision(
        self,
        messages: list[Message],
        images: list[ImageInput],
        system: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.0,
    ) -> LLMResponse:
        """Vision-enabled completion (images + text)."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier (anthropic, google)."""

    @property
    @abstractmethod
    def model(self) -> str:
        """Model name requests are sent to."""
