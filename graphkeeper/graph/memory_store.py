"""
In-process GraphStore.

Embedded backend for tests, notebooks and small single-process deployments.
Records are copied on the way in and out so callers can never mutate stored
state behind the store's back. Name similarity uses difflib ratios blended
with cosine similarity when both sides carry an embedding.
"""

import copy
import logging
from datetime import datetime
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..utils.async_helpers import cosine_similarity
from ..utils.text_helpers import normalize_fact, normalize_name
from .models import HAS_MEMBER, IS_DUPLICATE_OF, Edge, EdgeType, Neighbor, Node, NodeType, ensure_utc
from .store import GraphStore, merge_episode_ids

logger = logging.getLogger(__name__)


def _text_score(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


class InMemoryGraphStore(GraphStore):
    """Dict-backed GraphStore keyed by node/edge id."""

    def __init__(self, min_score: float = 0.3):
        """
        Args:
            min_score: Similarity floor for search results (0.0 returns everything)
        """
        self.nodes: Dict[str, Node] = {}
        self.edges: Dict[str, Edge] = {}
        self.min_score = min_score

    async def health_check(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_node(self, node: Node) -> None:
        self.nodes[node.id] = copy.deepcopy(node)

    async def upsert_edge(self, edge: Edge) -> None:
        stored = copy.deepcopy(edge)
        existing = self.edges.get(edge.id)
        if existing is not None:
            stored.episode_ids = merge_episode_ids(existing.episode_ids, edge.episode_ids)
        self.edges[edge.id] = stored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_node(self, node_id: str) -> Optional[Node]:
        node = self.nodes.get(node_id)
        return copy.deepcopy(node) if node is not None else None

    async def get_edge(self, edge_id: str) -> Optional[Edge]:
        edge = self.edges.get(edge_id)
        return copy.deepcopy(edge) if edge is not None else None

    def _current_relationships(self, group_id: str) -> List[Edge]:
        return [
            e
            for e in self.edges.values()
            if e.group_id == group_id and e.type == EdgeType.ENTITY and e.is_current
        ]

    async def search_nodes(
        self,
        query: str,
        group_id: str,
        embedding: Optional[np.ndarray] = None,
        node_type: NodeType = NodeType.ENTITY,
        limit: int = 50,
        exclude_ids: Sequence[str] = (),
    ) -> List[Node]:
        excluded = set(exclude_ids)
        normalized_query = normalize_name(query)
        scored = []
        for node in self.nodes.values():
            if node.group_id != group_id or node.type != node_type or node.id in excluded:
                continue
            if "merged_into" in node.attributes:
                continue
            score = _text_score(normalized_query, normalize_name(node.name))
            if embedding is not None and node.embedding is not None:
                score = max(score, cosine_similarity(embedding, node.embedding))
            if score >= self.min_score:
                scored.append((score, node.id, node))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [copy.deepcopy(node) for _, _, node in scored[:limit]]

    async def search_edges(
        self,
        query: str,
        group_id: str,
        embedding: Optional[np.ndarray] = None,
        limit: int = 50,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        exclude_ids: Sequence[str] = (),
    ) -> List[Edge]:
        excluded = set(exclude_ids)
        normalized_query = normalize_fact(query)
        scored = []
        for edge in self._current_relationships(group_id):
            if edge.id in excluded or edge.name == IS_DUPLICATE_OF:
                continue
            if source_id is not None and edge.source_id != source_id:
                continue
            if target_id is not None and edge.target_id != target_id:
                continue
            score = _text_score(normalized_query, normalize_fact(edge.fact))
            if embedding is not None and edge.fact_embedding is not None:
                score = max(score, cosine_similarity(embedding, edge.fact_embedding))
            if score >= self.min_score:
                scored.append((score, edge.id, edge))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [copy.deepcopy(edge) for _, _, edge in scored[:limit]]

    async def get_edges_between(self, node_a: str, node_b: str, group_id: str) -> List[Edge]:
        endpoints = {node_a, node_b}
        return [
            copy.deepcopy(e)
            for e in self._current_relationships(group_id)
            if {e.source_id, e.target_id} == endpoints and e.name != IS_DUPLICATE_OF
        ]

    async def get_edges_for_nodes(self, node_ids: Sequence[str], group_id: str) -> List[Edge]:
        wanted = set(node_ids)
        return [
            copy.deepcopy(e)
            for e in sorted(self.edges.values(), key=lambda e: (e.created_at, e.id))
            if e.group_id == group_id
            and e.is_current
            and (e.source_id in wanted or e.target_id in wanted)
        ]

    async def get_node_neighbors(self, node_id: str, group_id: str) -> List[Neighbor]:
        counts: Dict[str, int] = {}
        for edge in self._current_relationships(group_id):
            if edge.name == IS_DUPLICATE_OF:
                continue
            if edge.source_id == node_id:
                other = edge.target_id
            elif edge.target_id == node_id:
                other = edge.source_id
            else:
                continue
            if other == node_id:
                continue
            neighbor = self.nodes.get(other)
            if neighbor is None or neighbor.type != NodeType.ENTITY or neighbor.group_id != group_id:
                continue
            counts[other] = counts.get(other, 0) + 1
        return [Neighbor(node_id=nid, edge_count=count) for nid, count in sorted(counts.items())]

    async def get_entity_nodes(self, group_id: str) -> List[Node]:
        return [
            copy.deepcopy(n)
            for n in sorted(self.nodes.values(), key=lambda n: n.id)
            if n.group_id == group_id
            and n.type == NodeType.ENTITY
            and "merged_into" not in n.attributes
        ]

    async def get_group_ids(self) -> List[str]:
        return sorted({n.group_id for n in self.nodes.values() if n.type == NodeType.ENTITY})

    async def get_episodes_in_range(
        self, group_id: str, start: datetime, end: datetime, limit: int = 50
    ) -> List[Node]:
        start, end = ensure_utc(start), ensure_utc(end)
        episodes = [
            n
            for n in self.nodes.values()
            if n.group_id == group_id
            and n.type == NodeType.EPISODIC
            and n.valid_from is not None
            and start <= n.valid_from < end
        ]
        episodes.sort(key=lambda n: n.valid_from, reverse=True)
        return [copy.deepcopy(n) for n in episodes[:limit]]

    async def get_community_of(self, node_id: str) -> Optional[Node]:
        for edge in sorted(self.edges.values(), key=lambda e: e.created_at, reverse=True):
            if (
                edge.type == EdgeType.COMMUNITY
                and edge.name == HAS_MEMBER
                and edge.target_id == node_id
                and edge.is_current
            ):
                community = self.nodes.get(edge.source_id)
                if community is not None and community.type == NodeType.COMMUNITY:
                    return copy.deepcopy(community)
        return None

    async def get_membership_edges(self, group_id: str) -> List[Edge]:
        return [
            copy.deepcopy(e)
            for e in self.edges.values()
            if e.group_id == group_id
            and e.type == EdgeType.COMMUNITY
            and e.name == HAS_MEMBER
            and e.is_current
        ]

    async def has_edge(self, source_id: str, target_id: str, name: str) -> bool:
        return any(
            e.source_id == source_id and e.target_id == target_id and e.name == name and e.is_current
            for e in self.edges.values()
        )
