"""
Provider factory for creating appropriate provider instance.

Detects the provider from the model name and loads the API key from the
environment when it is not passed explicitly.
"""

import logging
import os
from typing import Optional

from ..exceptions import APIKeyError, ConfigurationError
from .anthropic_provider import AnthropicProvider
from .base import BaseProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


def create_provider(
    model: str,
    anthropic_api_key: Optional[str] = None,
    openai_api_key: Optional[str] = None,
) -> BaseProvider:
    """
    Create appropriate provider based on model name.

    Args:
        model: Model name (e.g., "claude-haiku-4-5", "gpt-4o-mini")
        anthropic_api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
        openai_api_key: OpenAI API key (defaults to OPENAI_API_KEY env var)

    Returns:
        AnthropicProvider or OpenAIProvider

    Raises:
        APIKeyError: If the provider's API key is missing
        ConfigurationError: If the provider cannot be determined

    Examples:
        >>> provider = create_provider("claude-haiku-4-5")  # Uses ANTHROPIC_API_KEY
        >>> provider = create_provider("gpt-4o-mini", openai_api_key="sk-...")
    """
    provider_name = detect_provider_from_model(model)
    logger.info(f"Creating provider: model={model}, provider={provider_name}")

    if provider_name == "anthropic":
        key = anthropic_api_key or os.getenv("ANTHROPIC_API_KEY")
        if not key:
            raise APIKeyError(
                "Anthropic API key required for Claude models. "
                "Set ANTHROPIC_API_KEY environment variable or pass anthropic_api_key.",
                details={"model": model},
            )
        return AnthropicProvider(api_key=key, model=model)

    key = openai_api_key or os.getenv("OPENAI_API_KEY")
    if not key:
        raise APIKeyError(
            "OpenAI API key required for GPT models. "
            "Set OPENAI_API_KEY environment variable or pass openai_api_key.",
            details={"model": model},
        )
    return OpenAIProvider(api_key=key, model=model)


def detect_provider_from_model(model: str) -> str:
    """
    Detect provider from model name.

    Returns:
        "anthropic" or "openai"

    Raises:
        ConfigurationError: If provider cannot be determined
    """
    model_lower = model.lower()

    if any(pattern in model_lower for pattern in ["claude", "haiku", "sonnet", "opus"]):
        return "anthropic"

    if any(pattern in model_lower for pattern in ["gpt-", "o1", "o3", "o4"]):
        return "openai"

    raise ConfigurationError(
        f"Cannot determine provider for model: {model}. "
        f"Model name should contain 'claude', 'haiku', 'sonnet', 'opus' (Anthropic) "
        f"or 'gpt-', 'o1', 'o3', 'o4' (OpenAI)",
        details={"model": model},
    )
