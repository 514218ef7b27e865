"""
LLM provider abstraction used by the arbitration and summarization services.

Usage:
    from graphkeeper.providers import create_provider

    provider = create_provider("claude-haiku-4-5")
    response = provider.create_message(
        messages=[{"role": "user", "content": "..."}],
        system="", max_tokens=300, temperature=0.0,
    )
    print(response.text)
"""

from .anthropic_provider import AnthropicProvider
from .base import BaseProvider, ProviderResponse
from .factory import create_provider, detect_provider_from_model
from .openai_provider import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "OpenAIProvider",
    "ProviderResponse",
    "create_provider",
    "detect_provider_from_model",
]
