"""AI provider factory."""

from __future__ import annotations

from crosswire.ai.anthropic_provider import AnthropicProvider
from crosswire.ai.base import AIProvider
from crosswire.ai.ollama import OllamaProvider

__all__ = ["AIProvider", "AnthropicProvider", "OllamaProvider", "get_provider"]


def get_provider(model_spec: str, config: dict | None = None) -> tuple[AIProvider, str]:
    """Parse 'provider:model_name' and return (provider_instance, model_name).

    If no colon is present, assumes ollama as the provider.
    """
    if ":" in model_spec:
        provider_name, model_name = model_spec.split(":", 1)
    else:
        provider_name = "ollama"
        model_name = model_spec

    config = config or {}

    if provider_name == "ollama":
        return OllamaProvider(
            base_url=config.get("ollama_base_url", "http://localhost:11434"),
            api_key=config.get("ollama_api_key", ""),
        ), model_name
    if provider_name == "anthropic":
        return AnthropicProvider(), model_name
    raise ValueError(f"Unknown AI provider: {provider_name!r}. Use 'ollama' or 'anthropic'.")
