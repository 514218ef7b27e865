"""
Anthropic Claude provider implementation.

Native Anthropic message format, so no translation is needed. The client is
wrapped with LangSmith so arbitration and summarization calls show up in traces.
"""

import logging
from typing import Any, Dict, List

import anthropic
from langsmith.wrappers import wrap_anthropic

from .base import BaseProvider, ProviderResponse

logger = logging.getLogger(__name__)


class AnthropicProvider(BaseProvider):
    """Anthropic Claude provider (Haiku / Sonnet / Opus)."""

    def __init__(self, api_key: str, model: str):
        """
        Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key (sk-ant-...)
            model: Model name (e.g., "claude-haiku-4-5")

        Raises:
            ValueError: If API key or model is invalid
        """
        if not api_key or not api_key.startswith("sk-ant-"):
            raise ValueError("Invalid Anthropic API key format (should start with sk-ant-)")

        if not any(pattern in model.lower() for pattern in ["claude", "haiku", "sonnet", "opus"]):
            raise ValueError(f"Invalid Claude model: {model}")

        self._client = wrap_anthropic(anthropic.Anthropic(api_key=api_key))
        self.model = model

        logger.info(f"AnthropicProvider initialized: model={model}")

    def create_message(
        self,
        messages: List[Dict[str, Any]],
        system: List[Dict[str, Any]] | str,
        max_tokens: int,
        temperature: float,
        **kwargs,
    ) -> ProviderResponse:
        create_kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
            **kwargs,
        }
        # Empty system must be omitted (BadRequestError otherwise)
        if system:
            create_kwargs["system"] = system

        response = self._client.messages.create(**create_kwargs)

        return ProviderResponse(
            content=[block.model_dump() for block in response.content],
            stop_reason=response.stop_reason or "end_turn",
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            model=response.model,
        )

    def get_model_name(self) -> str:
        return self.model

    def get_provider_name(self) -> str:
        return "anthropic"
