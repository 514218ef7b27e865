"""
Token usage and cost tracking for LLM calls.

Every arbitration and summarization call reports its provider usage here.
The batch orchestrator reads the totals before and after a batch to report
per-batch token counts.

Usage:
    from graphkeeper.usage_tracker import get_global_tracker

    tracker = get_global_tracker()
    tracker.track_llm("anthropic", "claude-haiku-4-5", 1000, 200, "arbitration")
    print(tracker.get_summary())
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


# USD per 1M tokens
PRICING = {
    "anthropic": {
        "claude-haiku-4-5": {"input": 1.00, "output": 5.00},
        "claude-haiku-4-5-20251001": {"input": 1.00, "output": 5.00},
        "claude-haiku-3-5": {"input": 0.80, "output": 4.00},
        "claude-sonnet-4-5": {"input": 3.00, "output": 15.00},
        "claude-sonnet-4": {"input": 3.00, "output": 15.00},
        "claude-opus-4-5": {"input": 5.00, "output": 25.00},
    },
    "openai": {
        "gpt-4o": {"input": 2.50, "output": 10.00},
        "gpt-4o-mini": {"input": 0.15, "output": 0.60},
        "o3-mini": {"input": 3.00, "output": 12.00},
        "o4-mini": {"input": 3.00, "output": 12.00},
    },
}


@dataclass(frozen=True)
class UsageEntry:
    """One LLM call."""

    timestamp: datetime
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    operation: str  # "arbitration", "summarization", ...


class UsageTracker:
    """
    Accumulates token usage and estimated cost across LLM calls.

    Totals are exposed read-only; reset() starts a new session.
    """

    def __init__(self):
        self._entries: List[UsageEntry] = []
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_cost = 0.0
        self._tokens_by_operation: Dict[str, int] = {}

    @property
    def entries(self) -> List[UsageEntry]:
        return self._entries.copy()

    @property
    def total_input_tokens(self) -> int:
        return self._total_input_tokens

    @property
    def total_output_tokens(self) -> int:
        return self._total_output_tokens

    @property
    def total_cost(self) -> float:
        return self._total_cost

    @property
    def tokens_by_operation(self) -> Dict[str, int]:
        return self._tokens_by_operation.copy()

    def track_llm(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        operation: str = "llm",
    ) -> float:
        """
        Record one call and return its estimated cost in USD.

        Unknown models are tracked with zero cost.
        """
        cost = self._calculate_cost(provider, model, input_tokens, output_tokens)
        self._entries.append(
            UsageEntry(
                timestamp=datetime.now(timezone.utc),
                provider=provider,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost,
                operation=operation,
            )
        )
        self._total_input_tokens += input_tokens
        self._total_output_tokens += output_tokens
        self._total_cost += cost
        self._tokens_by_operation[operation] = (
            self._tokens_by_operation.get(operation, 0) + input_tokens + output_tokens
        )
        logger.debug(
            f"LLM usage tracked: {provider}/{model} [{operation}] - "
            f"{input_tokens} in, {output_tokens} out - ${cost:.6f}"
        )
        return cost

    @staticmethod
    def _calculate_cost(provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        pricing = PRICING.get(provider, {}).get(model)
        if not pricing:
            logger.debug(f"No pricing data for {provider}/{model}, cost recorded as 0")
            return 0.0
        return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000

    def get_total_tokens(self) -> int:
        return self._total_input_tokens + self._total_output_tokens

    def get_summary(self) -> str:
        lines = [
            f"LLM calls: {len(self._entries)}",
            f"Tokens: {self._total_input_tokens} in, {self._total_output_tokens} out",
            f"Estimated cost: ${self._total_cost:.4f}",
        ]
        for operation, tokens in sorted(self._tokens_by_operation.items()):
            lines.append(f"  {operation}: {tokens} tokens")
        return "\n".join(lines)

    def reset(self) -> None:
        self._entries.clear()
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_cost = 0.0
        self._tokens_by_operation.clear()


_global_tracker: Optional[UsageTracker] = None


def get_global_tracker() -> UsageTracker:
    """Process-wide tracker used when no tracker is passed explicitly."""
    global _global_tracker
    if _global_tracker is None:
        _global_tracker = UsageTracker()
    return _global_tracker


def reset_global_tracker() -> None:
    if _global_tracker is not None:
        _global_tracker.reset()
