"""
OpenAI GPT provider implementation.

Translates Anthropic-format messages to chat completions and converts the
response back to Anthropic content blocks.
"""

import logging
from typing import Any, Dict, List

import openai
from langsmith.wrappers import wrap_openai

from .base import BaseProvider, ProviderResponse

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    """OpenAI GPT provider with format translation."""

    def __init__(self, api_key: str, model: str):
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key (sk-...)
            model: Model name (e.g., "gpt-4o-mini")

        Raises:
            ValueError: If API key is invalid
        """
        if not api_key or not api_key.startswith("sk-"):
            raise ValueError("Invalid OpenAI API key format (should start with sk- or sk-proj-)")

        self._client = wrap_openai(openai.OpenAI(api_key=api_key))
        self.model = model

        logger.info(f"OpenAIProvider initialized: model={model}")

    def create_message(
        self,
        messages: List[Dict[str, Any]],
        system: List[Dict[str, Any]] | str,
        max_tokens: int,
        temperature: float,
        **kwargs,
    ) -> ProviderResponse:
        api_params = {
            "model": self.model,
            "messages": self._convert_messages_to_openai(messages, system),
            "temperature": temperature,
            **kwargs,
        }
        # o-series and gpt-5 reject max_tokens
        if self._uses_max_completion_tokens():
            api_params["max_completion_tokens"] = max_tokens
        else:
            api_params["max_tokens"] = max_tokens

        response = self._client.chat.completions.create(**api_params)
        choice = response.choices[0]
        text = choice.message.content or ""

        return ProviderResponse(
            content=[{"type": "text", "text": text}] if text else [],
            stop_reason=choice.finish_reason or "stop",
            usage={
                "input_tokens": getattr(response.usage, "prompt_tokens", 0) or 0,
                "output_tokens": getattr(response.usage, "completion_tokens", 0) or 0,
            },
            model=response.model,
        )

    @staticmethod
    def _convert_messages_to_openai(
        messages: List[Dict[str, Any]], system: List[Dict[str, Any]] | str
    ) -> List[Dict[str, Any]]:
        """Flatten Anthropic messages (string or text-block content) to chat format."""
        converted: List[Dict[str, Any]] = []

        if isinstance(system, list):
            system_text = "\n\n".join(b.get("text", "") for b in system if b.get("type") == "text")
        else:
            system_text = system or ""
        if system_text:
            converted.append({"role": "system", "content": system_text})

        for msg in messages:
            content = msg.get("content", "")
            if isinstance(content, list):
                content = "".join(b.get("text", "") for b in content if b.get("type") == "text")
            converted.append({"role": msg["role"], "content": content})

        return converted

    def _uses_max_completion_tokens(self) -> bool:
        model_lower = self.model.lower()
        return model_lower.startswith(("o1", "o3", "o4", "gpt-5"))

    def get_model_name(self) -> str:
        return self.model

    def get_provider_name(self) -> str:
        return "openai"
