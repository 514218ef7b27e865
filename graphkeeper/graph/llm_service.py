"""
Shared plumbing for LLM-backed graph services (arbiter, summarizer).

Providers expose a blocking create_message(); calls run in a worker thread
and are retried on rate-limit and timeout errors only.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from ..config import LLMConfig
from ..exceptions import ConfigurationError
from ..providers.base import BaseProvider
from ..usage_tracker import UsageTracker, get_global_tracker
from ..utils.retry import async_retry_with_exponential_backoff, is_retryable_error

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


def load_prompt(name: str) -> str:
    """
    Load a prompt template shipped in graphkeeper/prompts.

    Raises:
        ConfigurationError: If the prompt file is missing
    """
    path = PROMPTS_DIR / f"{name}.txt"
    if not path.exists():
        raise ConfigurationError(
            f"Prompt not found: {path}", details={"prompt_path": str(path)}
        )
    return path.read_text(encoding="utf-8").strip()


class LLMService:
    """Base for services that send one-shot prompts to a provider."""

    operation = "llm"

    def __init__(
        self,
        provider: BaseProvider,
        config: Optional[LLMConfig] = None,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        self.provider = provider
        self.config = config or LLMConfig()
        self.usage_tracker = usage_tracker or get_global_tracker()
        self._complete_with_retry = async_retry_with_exponential_backoff(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            retry_condition=is_retryable_error,
        )(self._complete_once)

    async def _complete_once(self, prompt: str, max_tokens: int) -> str:
        response = await asyncio.to_thread(
            self.provider.create_message,
            messages=[{"role": "user", "content": prompt}],
            system="",
            max_tokens=max_tokens,
            temperature=self.config.temperature,
        )
        self.usage_tracker.track_llm(
            self.provider.get_provider_name(),
            response.model,
            response.usage["input_tokens"],
            response.usage["output_tokens"],
            self.operation,
        )
        if response.truncated:
            logger.warning(f"LLM response hit max_tokens={max_tokens}; output may be cut off")
        return response.text

    async def complete(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Send one user message and return the response text."""
        return await self._complete_with_retry(prompt, max_tokens or self.config.max_tokens)
