"""
OpenAI-compatible client factory shared by the judge and the code generator.
"""

from typing import Any, Dict, Optional

from openai import OpenAI


# Provider default endpoints (OpenAI-compatible APIs)
PROVIDER_ENDPOINTS = {
    "cerebras": "https://api.cerebras.ai/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai"
}


def create_client(provider: str, api_key: str, endpoint: Optional[str] = None) -> OpenAI:
    """
    Build an OpenAI client for the given provider.

    Args:
        provider: Provider name ("openai", "litellm", "cerebras", "anthropic", "google", etc.)
        api_key: API key for the provider
        endpoint: Custom endpoint URL (required for LiteLLM, optional override otherwise)

    Returns:
        OpenAI client bound to the provider's endpoint

    Raises:
        ValueError: If the provider is unknown and no endpoint is given
    """
    if provider == "openai":
        return OpenAI(api_key=api_key, base_url=endpoint) if endpoint else OpenAI(api_key=api_key)

    if provider == "litellm":
        # LiteLLM uses OpenAI-compatible API
        if not endpoint:
            raise ValueError("LiteLLM provider requires 'endpoint' parameter")
        return OpenAI(api_key=api_key, base_url=endpoint)

    if provider in PROVIDER_ENDPOINTS:
        return OpenAI(api_key=api_key, base_url=endpoint or PROVIDER_ENDPOINTS[provider])

    if endpoint:
        return OpenAI(api_key=api_key, base_url=endpoint)

    raise ValueError(f"Unsupported model provider: {provider}")


def extract_usage(completion: Any) -> Optional[Dict[str, int]]:
    """Token usage of a chat completion as a plain dict, if reported."""
    usage = getattr(completion, "usage", None)
    if usage is None:
        return None
    return {
        "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0
    }
