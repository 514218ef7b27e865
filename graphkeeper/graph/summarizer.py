"""
LLM summarization service for communities.

summarize_pair() merges two summaries into one; name_for() derives a short
community name from a summary. Both raise SummarizationError on failure; the
cluster engine decides the fallback.
"""

import json
import logging
from typing import Optional

from ..config import LLMConfig
from ..exceptions import SummarizationError
from ..providers.base import BaseProvider
from ..usage_tracker import UsageTracker
from ..utils.text_helpers import parse_json_object, strip_code_fences, truncate
from .llm_service import LLMService, load_prompt

logger = logging.getLogger(__name__)


class LLMSummarizer(LLMService):
    """Pairwise summary merging and community naming."""

    operation = "summarization"

    def __init__(
        self,
        provider: BaseProvider,
        config: Optional[LLMConfig] = None,
        max_name_length: int = 100,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        super().__init__(provider, config, usage_tracker)
        self.max_name_length = max_name_length
        self._pair_prompt = load_prompt("summarize_pair")
        self._name_prompt = load_prompt("community_name")

    async def _ask_field(self, prompt: str, field: str, max_tokens: int) -> str:
        try:
            text = await self.complete(prompt, max_tokens=max_tokens)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            raise SummarizationError(f"Summarizer call failed: {e}", cause=e) from e

        data = parse_json_object(text)
        if data is not None:
            value = str(data.get(field) or "").strip()
        else:
            # Plain-text answers are accepted as-is
            value = strip_code_fences((text or "").strip())
        if not value:
            raise SummarizationError(
                f"Empty '{field}' in summarizer response", details={"preview": (text or "")[:200]}
            )
        return value

    async def summarize_pair(self, a: str, b: str) -> str:
        """
        Combine two summaries into one.

        Raises:
            SummarizationError: If the call fails or returns nothing usable
        """
        a, b = (a or "").strip(), (b or "").strip()
        if not a or not b or a == b:
            return a or b

        prompt = (
            f"{self._pair_prompt}\n\n"
            f"{json.dumps({'summary_a': a, 'summary_b': b}, ensure_ascii=False, indent=2)}"
        )
        return await self._ask_field(prompt, "summary", self.config.max_tokens)

    async def name_for(self, summary: str) -> str:
        """
        Short descriptive name for a community summary.

        Raises:
            SummarizationError: If the call fails or returns nothing usable
        """
        summary = (summary or "").strip()
        if not summary:
            raise SummarizationError("Cannot name an empty summary")

        prompt = f"{self._name_prompt}\n\nSUMMARY:\n{summary}"
        name = await self._ask_field(prompt, "name", 100)
        return truncate(name, self.max_name_length)
