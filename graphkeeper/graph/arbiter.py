"""
LLM arbitration service.

Given a candidate (entity or fact) and a numbered list of related items, the
arbiter returns a verdict naming duplicates and, for facts, contradictions.
Verdicts are validated with pydantic; anything unparseable or pointing
outside the related list raises ArbitrationError so the caller can fall back
to "no match".
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..config import LLMConfig
from ..exceptions import ArbitrationError
from ..providers.base import BaseProvider
from ..usage_tracker import UsageTracker
from ..utils.text_helpers import parse_json_object, truncate
from .llm_service import LLMService, load_prompt
from .models import Edge, Node

logger = logging.getLogger(__name__)

DEFAULT_FACT_TYPE = "DEFAULT"


class NodeVerdict(BaseModel):
    """Arbiter decision for one candidate entity."""

    duplicate_idx: int = Field(default=-1, description="Index of the best duplicate, -1 if none")
    duplicates: List[int] = Field(default_factory=list, description="Further duplicate indices")

    @field_validator("duplicates")
    @classmethod
    def dedupe_indices(cls, v: List[int]) -> List[int]:
        return list(dict.fromkeys(v))

    def all_indices(self) -> List[int]:
        """Every index named as a duplicate, best match first."""
        indices = [self.duplicate_idx] if self.duplicate_idx >= 0 else []
        return list(dict.fromkeys(indices + [i for i in self.duplicates if i >= 0]))


class EdgeVerdict(BaseModel):
    """Arbiter decision for one candidate fact."""

    duplicate_facts: List[int] = Field(default_factory=list)
    contradicted_facts: List[int] = Field(default_factory=list)
    fact_type: str = Field(default=DEFAULT_FACT_TYPE)

    @field_validator("duplicate_facts", "contradicted_facts")
    @classmethod
    def dedupe_indices(cls, v: List[int]) -> List[int]:
        return list(dict.fromkeys(v))

    @field_validator("fact_type")
    @classmethod
    def normalize_fact_type(cls, v: Optional[str]) -> str:
        v = (v or "").strip()
        return v.upper().replace(" ", "_") if v else DEFAULT_FACT_TYPE


def _check_indices(indices: Sequence[int], size: int, what: str) -> None:
    bad = [i for i in indices if i < -1 or i >= size]
    if bad:
        raise ArbitrationError(
            f"{what} verdict references indices {bad} outside related list of {size}",
            details={"indices": bad, "related_count": size},
        )


def _node_view(node: Node) -> Dict[str, Any]:
    return {
        "name": node.name,
        "entity_type": node.entity_type,
        "summary": truncate(node.summary, 500),
    }


def _edge_view(edge: Edge) -> Dict[str, Any]:
    return {
        "relation": edge.name,
        "fact": edge.fact,
        "valid_from": edge.valid_from.isoformat() if edge.valid_from else None,
        "invalid_at": edge.invalid_at.isoformat() if edge.invalid_at else None,
    }


class LLMArbiter(LLMService):
    """Decides duplicates and contradictions with one LLM call per candidate."""

    operation = "arbitration"

    def __init__(
        self,
        provider: BaseProvider,
        config: Optional[LLMConfig] = None,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        super().__init__(provider, config, usage_tracker)
        self._node_prompt = load_prompt("node_dedupe")
        self._edge_prompt = load_prompt("edge_resolve")

    @staticmethod
    def _context_block(context: Optional[Sequence[str]]) -> str:
        if not context:
            return ""
        episodes = "\n".join(f"- {truncate(c, 1000)}" for c in context)
        return f"\n\nPREVIOUS EPISODES:\n{episodes}"

    async def _ask(self, prompt: str, what: str) -> Dict[str, Any]:
        try:
            text = await self.complete(prompt)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            raise ArbitrationError(f"{what} arbitration call failed: {e}", cause=e) from e

        data = parse_json_object(text)
        if data is None:
            raise ArbitrationError(
                f"Malformed {what} verdict", details={"preview": (text or "")[:200]}
            )
        return data

    async def decide_node(
        self,
        candidate: Node,
        related: Sequence[Node],
        context: Optional[Sequence[str]] = None,
    ) -> NodeVerdict:
        """
        Judge whether `candidate` duplicates any of `related`.

        Raises:
            ArbitrationError: If the call fails or the verdict is malformed
        """
        if not related:
            return NodeVerdict()

        existing = [{"idx": i, **_node_view(n)} for i, n in enumerate(related)]
        prompt = (
            f"{self._node_prompt}\n\n"
            f"NEW ENTITY:\n{json.dumps(_node_view(candidate), ensure_ascii=False)}\n\n"
            f"EXISTING ENTITIES:\n{json.dumps(existing, ensure_ascii=False, indent=2)}"
            f"{self._context_block(context)}"
        )
        data = await self._ask(prompt, "node")
        try:
            verdict = NodeVerdict.model_validate(data)
        except PydanticValidationError as e:
            raise ArbitrationError(f"Invalid node verdict: {e}", cause=e) from e

        _check_indices([verdict.duplicate_idx, *verdict.duplicates], len(related), "Node")
        return verdict

    async def decide_edge(
        self,
        candidate: Edge,
        related: Sequence[Edge],
        context: Optional[Sequence[str]] = None,
    ) -> EdgeVerdict:
        """
        Judge which of `related` the candidate duplicates or contradicts.

        Raises:
            ArbitrationError: If the call fails or the verdict is malformed
        """
        if not related:
            return EdgeVerdict()

        existing = [{"idx": i, **_edge_view(e)} for i, e in enumerate(related)]
        prompt = (
            f"{self._edge_prompt}\n\n"
            f"NEW FACT:\n{json.dumps(_edge_view(candidate), ensure_ascii=False)}\n\n"
            f"EXISTING FACTS:\n{json.dumps(existing, ensure_ascii=False, indent=2)}"
            f"{self._context_block(context)}"
        )
        data = await self._ask(prompt, "edge")
        try:
            verdict = EdgeVerdict.model_validate(data)
        except PydanticValidationError as e:
            raise ArbitrationError(f"Invalid edge verdict: {e}", cause=e) from e

        _check_indices(verdict.duplicate_facts, len(related), "Edge")
        _check_indices(verdict.contradicted_facts, len(related), "Edge")
        return verdict
