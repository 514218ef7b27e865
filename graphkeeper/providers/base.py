"""
Base provider interface for LLM abstraction.

PRAGMATIC DESIGN:
- Minimal abstraction (the consistency engine only needs one-shot completions)
- Anthropic message format is canonical; other providers translate
- Sync API: callers run it in a worker thread via asyncio.to_thread
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass
class ProviderResponse:
    """
    Unified response format across providers.

    Uses Anthropic content blocks as the canonical structure. OpenAI
    responses are converted to this format.
    """

    content: List[Dict[str, Any]]  # Anthropic content blocks format
    stop_reason: str  # "end_turn", "max_tokens", etc.
    usage: Dict[str, int]  # {input_tokens, output_tokens}
    model: str

    def __post_init__(self):
        """Validate response structure at construction time."""
        for i, block in enumerate(self.content):
            if not isinstance(block, dict):
                raise ValueError(f"Content block {i} must be a dict, got {type(block)}")
            if "type" not in block:
                raise ValueError(f"Content block {i} missing 'type' key: {block}")

        for key in ("input_tokens", "output_tokens"):
            if key not in self.usage:
                raise ValueError(f"Usage dict missing required key '{key}': {self.usage}")

        for key, value in self.usage.items():
            if not isinstance(value, int):
                raise ValueError(f"Usage {key} must be an integer, got {type(value)}: {value}")
            if value < 0:
                raise ValueError(f"Usage {key} must be non-negative, got {value}")

    @property
    def text(self) -> str:
        """Concatenated text from all text blocks."""
        return "".join(block["text"] for block in self.content if block.get("type") == "text")

    @property
    def truncated(self) -> bool:
        """True if generation stopped on the token limit (JSON may be cut off)."""
        return self.stop_reason in ("max_tokens", "length")


class BaseProvider(ABC):
    """
    Abstract base for LLM providers.

    The arbiter and summarizer are provider-agnostic: they only call
    create_message() and read ProviderResponse.text.
    """

    @abstractmethod
    def create_message(
        self,
        messages: List[Dict[str, Any]],
        system: List[Dict[str, Any]] | str,
        max_tokens: int,
        temperature: float,
        **kwargs,
    ) -> ProviderResponse:
        """
        Create a message synchronously (non-streaming).

        Args:
            messages: Conversation history in Anthropic format
            system: System prompt (structured list or string)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (0.0-1.0)
            **kwargs: Provider-specific parameters

        Returns:
            ProviderResponse with content, usage, etc.

        Raises:
            Provider-specific API errors (anthropic.APIError, openai.OpenAIError, etc.)
        """
        pass

    @abstractmethod
    def get_model_name(self) -> str:
        """Model identifier (e.g., "claude-haiku-4-5", "gpt-4o-mini")."""
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        """Provider identifier (e.g., "anthropic", "openai")."""
        pass
