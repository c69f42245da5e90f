# src/llm/client_factory.py — v3
"""Factory: instantiate the vision client named in settings."""

from __future__ import annotations

import importlib
import logging

from shelfscan.config.settings import Settings
from shelfscan.llm.base_client import BaseLLMClient

logger = logging.getLogger(__name__)

# Provider name → adapter class path (lazy import).
_PROVIDER_REGISTRY: dict[str, str] = {
    "anthropic": "shelfscan.llm.adapters.anthropic_adapter.AnthropicAdapter",
    "google": "shelfscan.llm.adapters.google_adapter.GoogleAdapter",
}


class UnsupportedProviderError(ValueError):
    """Raised when a provider is not registered."""


def create_llm_client(
    provider: str,
    model: str,
    settings: Settings | None = None,
    **kwargs: object,
) -> BaseLLMClient:
    """Instantiate the adapter for `provider`.

    Args:
        provider: Provider identifier (anthropic, google).
        model: Model name (e.g. gemini-2.0-flash).
        settings: Application settings, used for the API key.
        **kwargs: Additional adapter arguments.

    Raises:
        UnsupportedProviderError: If provider is not registered.
    """
    if provider not in _PROVIDER_REGISTRY:
        raise UnsupportedProviderError(
            f"Unsupported vision provider: {provider!r}. "
            f"Available: {', '.join(sorted(_PROVIDER_REGISTRY))}"
        )

    adapter_cls = _import_class(_PROVIDER_REGISTRY[provider])
    init_kwargs = dict(kwargs)
    init_kwargs["model"] = model
    if settings is not None:
        if provider == "anthropic":
            init_kwargs.setdefault("api_key", settings.anthropic_api_key)
        elif provider == "google":
            init_kwargs.setdefault("api_key", settings.google_api_key)

    logger.debug("Creating vision client: provider=%s, model=%s", provider, model)
    return adapter_cls(**init_kwargs)


def create_vision_client(settings: Settings) -> BaseLLMClient:
    return create_llm_client(settings.vision_provider, settings.vision_model, settings)


def register_provider(name: str, class_path: str) -> None:
    """Register a custom adapter by fully qualified class path."""
    _PROVIDER_REGISTRY[name] = class_path
    logger.info("Registered vision provider: %s -> %s", name, class_path)


def _import_class(class_path: str) -> type:
    module_path, class_name = class_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)
