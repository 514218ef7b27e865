"""
Graph storage contract.

Every backend (in-process or PostgreSQL) implements GraphStore; resolvers and
the cluster engine only ever talk to this interface.

Contract notes:
- upsert_node / upsert_edge are idempotent by id. Node and edge fields are
  last-write-wins, except Edge.episode_ids which is merged as an ordered
  set-union so concurrent attestations are never lost.
- "Current" reads exclude edges with expired_at set.
- Membership lookups always follow community -> member (HAS_MEMBER).
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from ..exceptions import is_recoverable
from ..utils.async_helpers import run_async_safe
from ..utils.security import sanitize_error
from .models import BatchItemError, Edge, Neighbor, Node, NodeType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GraphStore(ABC):
    """Storage capabilities required by the consistency engine."""

    async def initialize(self) -> None:
        """Prepare the backend (connection pool, schema). Default: nothing to do."""

    async def close(self) -> None:
        """Release backend resources. Default: nothing to do."""

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify the backend is reachable.

        Raises:
            StorageConnectionError: If the backend cannot be reached
        """

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_node(self, node: Node) -> None:
        """Insert or replace a node by id."""

    @abstractmethod
    async def upsert_edge(self, edge: Edge) -> None:
        """Insert or replace an edge by id (episode_ids merged as set-union)."""

    # ------------------------------------------------------------------
    # Point reads
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_node(self, node_id: str) -> Optional[Node]:
        """Fetch a node by id, or None."""

    @abstractmethod
    async def get_edge(self, edge_id: str) -> Optional[Edge]:
        """Fetch an edge by id, or None."""

    async def get_nodes(self, node_ids: Sequence[str]) -> List[Node]:
        """Fetch several nodes; missing ids are skipped."""
        nodes = []
        for node_id in node_ids:
            node = await self.get_node(node_id)
            if node is not None:
                nodes.append(node)
        return nodes

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    @abstractmethod
    async def search_nodes(
        self,
        query: str,
        group_id: str,
        embedding: Optional[np.ndarray] = None,
        node_type: NodeType = NodeType.ENTITY,
        limit: int = 50,
        exclude_ids: Sequence[str] = (),
    ) -> List[Node]:
        """
        Nodes of one group ranked by name/embedding similarity to the query.

        Nodes already folded into another (attributes["merged_into"]) are skipped.
        """

    @abstractmethod
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
        """
        Current Relationship edges of one group ranked by fact similarity.

        Optionally restricted to one source and/or target node.
        """

    # ------------------------------------------------------------------
    # Structural queries
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_edges_between(self, node_a: str, node_b: str, group_id: str) -> List[Edge]:
        """Current Relationship edges between two nodes, in either direction."""

    @abstractmethod
    async def get_edges_for_nodes(self, node_ids: Sequence[str], group_id: str) -> List[Edge]:
        """
        Current edges of every type (Relationship, Mention, Membership) with
        either endpoint in node_ids.
        """

    @abstractmethod
    async def get_node_neighbors(self, node_id: str, group_id: str) -> List[Neighbor]:
        """
        Weighted-neighbor query for the cluster projection.

        Other entities of the group linked to node_id by current Relationship
        edges (IS_DUPLICATE_OF excluded), with the number of such edges.
        """

    @abstractmethod
    async def get_entity_nodes(self, group_id: str) -> List[Node]:
        """All entity nodes of a group that have not been folded into another."""

    @abstractmethod
    async def get_group_ids(self) -> List[str]:
        """Distinct group ids that hold entity nodes."""

    @abstractmethod
    async def get_episodes_in_range(
        self, group_id: str, start: datetime, end: datetime, limit: int = 50
    ) -> List[Node]:
        """Episodes of a group with start <= valid_from < end, most recent first."""

    @abstractmethod
    async def get_community_of(self, node_id: str) -> Optional[Node]:
        """Community holding a current HAS_MEMBER edge to node_id, or None."""

    @abstractmethod
    async def get_membership_edges(self, group_id: str) -> List[Edge]:
        """Current HAS_MEMBER edges of a group."""

    @abstractmethod
    async def has_edge(self, source_id: str, target_id: str, name: str) -> bool:
        """True if a current edge with this name already links source -> target."""

    # ------------------------------------------------------------------
    # Sync wrappers
    # ------------------------------------------------------------------

    def get_node_sync(self, node_id: str) -> Optional[Node]:
        return run_async_safe(self.get_node(node_id), operation_name="get_node")

    def get_entity_nodes_sync(self, group_id: str) -> List[Node]:
        return run_async_safe(self.get_entity_nodes(group_id), operation_name="get_entity_nodes")


def merge_episode_ids(existing: Sequence[str], incoming: Sequence[str]) -> List[str]:
    """Ordered set-union: existing order first, new ids appended."""
    return list(dict.fromkeys([*existing, *incoming]))


async def write_each(
    write: Callable[[T], Awaitable[None]],
    items: Iterable[T],
    stage: str,
    item_id: Callable[[T], str] = lambda item: getattr(item, "id", "?"),
) -> Tuple[List[T], List[BatchItemError]]:
    """
    Write items one at a time, recording individual failures.

    Returns (written, errors). Unrecoverable failures (lost connectivity,
    consistency violations) are not item failures and propagate.
    """
    written: List[T] = []
    errors: List[BatchItemError] = []
    for item in items:
        try:
            await write(item)
            written.append(item)
        except Exception as e:
            if not is_recoverable(e):
                raise
            ident = item_id(item)
            logger.warning(f"[{stage}] write failed for {ident}: {sanitize_error(e)}", exc_info=True)
            errors.append(BatchItemError(stage=stage, item_id=ident, message=sanitize_error(e)))
    return written, errors
