"""
ClusterEngine: community detection and maintenance.

Full rebuild (build_communities):
    projection -> label propagation -> hierarchical pairwise summaries ->
    community node + name embedding + HAS_MEMBER edges.
    The group's previous memberships are expired, never deleted.

Incremental (update_community):
    existing membership, else the modal community of the entity's neighbors;
    re-summarize (entity, community), rename, re-embed, persist, and add the
    membership edge when the entity is new to the community.

Summarizer failures degrade: a failed pair carries its left summary through,
a failed name falls back to the start of the summary.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import ClusterConfig
from ..exceptions import ConsistencyError, StorageConnectionError
from ..utils.async_helpers import gather_bounded, run_async_safe
from ..utils.security import sanitize_error
from ..utils.text_helpers import truncate
from .embedder import GraphEmbedder
from .label_propagation import build_projection, label_propagation
from .models import BatchItemError, Edge, Node, NodeType, utc_now, validate_group_id
from .store import GraphStore, write_each
from .summarizer import LLMSummarizer

logger = logging.getLogger(__name__)

STAGE = "community"


@dataclass
class CommunityBuildResult:
    """Communities written by a rebuild or an incremental update."""

    community_nodes: List[Node] = field(default_factory=list)
    community_edges: List[Edge] = field(default_factory=list)
    expired_edges: List[Edge] = field(default_factory=list)
    errors: List[BatchItemError] = field(default_factory=list)


class ClusterEngine:
    """Groups canonical entities into communities and keeps their summaries current."""

    def __init__(
        self,
        store: GraphStore,
        summarizer: LLMSummarizer,
        embedder: Optional[GraphEmbedder] = None,
        config: Optional[ClusterConfig] = None,
    ):
        self.store = store
        self.summarizer = summarizer
        self.embedder = embedder
        self.config = config or ClusterConfig()

    # =========================================================================
    # Full rebuild
    # =========================================================================

    async def get_community_clusters(self, group_ids: Optional[Sequence[str]] = None) -> List[List[Node]]:
        """Clusters of entity nodes (two or more members) for each requested group."""
        if group_ids is None:
            group_ids = await self.store.get_group_ids()

        clusters: List[List[Node]] = []
        for group_id in group_ids:
            validate_group_id(group_id)
            projection = await build_projection(self.store, group_id)
            id_clusters = label_propagation(
                projection,
                max_iterations=self.config.max_iterations,
                min_cluster_size=self.config.min_cluster_size,
            )
            for ids in id_clusters:
                members = await self.store.get_nodes(ids)
                if len(members) >= self.config.min_cluster_size:
                    clusters.append(members)
            logger.info(f"Group '{group_id}': {len(id_clusters)} clusters from {len(projection)} entities")
        return clusters

    async def build_communities(self, group_ids: Optional[Sequence[str]] = None) -> CommunityBuildResult:
        """
        Rebuild communities for the given groups (all groups when None).

        Raises:
            StorageConnectionError: If storage becomes unreachable
        """
        result = CommunityBuildResult()
        if group_ids is None:
            group_ids = await self.store.get_group_ids()

        for group_id in group_ids:
            clusters = await self.get_community_clusters([group_id])
            await self._expire_memberships(group_id, result)

            built = await gather_bounded(
                (self._build_community(members, result) for members in clusters),
                self.config.max_concurrent_clusters,
            )
            for community, edges in built:
                written, errors = await write_each(self.store.upsert_node, [community], STAGE)
                result.errors.extend(errors)
                if not written:
                    continue
                result.community_nodes.append(community)
                written_edges, errors = await write_each(self.store.upsert_edge, edges, STAGE)
                result.community_edges.extend(written_edges)
                result.errors.extend(errors)

        logger.info(
            f"Built {len(result.community_nodes)} communities with "
            f"{len(result.community_edges)} memberships, expired {len(result.expired_edges)}"
        )
        return result

    def build_communities_sync(self, group_ids: Optional[Sequence[str]] = None) -> CommunityBuildResult:
        return run_async_safe(
            self.build_communities(group_ids), timeout=None, operation_name="build_communities"
        )

    async def _expire_memberships(self, group_id: str, result: CommunityBuildResult) -> None:
        now = utc_now()
        stale = [
            edge.copy(expired_at=now, updated_at=now)
            for edge in await self.store.get_membership_edges(group_id)
        ]
        written, errors = await write_each(self.store.upsert_edge, stale, STAGE)
        result.expired_edges.extend(written)
        result.errors.extend(errors)

    async def summarize_hierarchically(self, summaries: List[str], result: Optional[CommunityBuildResult] = None) -> str:
        """
        Reduce summaries pairwise, one round at a time.

        Each round pairs the left half with the right half; an odd last
        element is carried into the next round unpaired. All pairs of a
        round run concurrently and the round completes before the next one.
        """
        summaries = [s for s in summaries if s]
        if not summaries:
            return ""

        while len(summaries) > 1:
            carried = summaries.pop() if len(summaries) % 2 == 1 else None
            half = len(summaries) // 2
            pairs = list(zip(summaries[:half], summaries[half:]))
            summaries = await gather_bounded(
                (self._summarize_pair(left, right, result) for left, right in pairs),
                self.config.max_concurrent_clusters,
            )
            if carried is not None:
                summaries.append(carried)
        return summaries[0]

    async def _summarize_pair(self, left: str, right: str, result: Optional[CommunityBuildResult]) -> str:
        try:
            return await self.summarizer.summarize_pair(left, right)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Pair summary failed, carrying left summary through: {e}")
            if result is not None:
                result.errors.append(BatchItemError(STAGE, "summary", sanitize_error(e)))
            return left

    async def _name_for(self, summary: str, fallback: str, result: Optional[CommunityBuildResult]) -> str:
        try:
            return await self.summarizer.name_for(summary)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Community naming failed, using fallback name: {e}")
            if result is not None:
                result.errors.append(BatchItemError(STAGE, "name", sanitize_error(e)))
            return fallback

    async def _embed_name(self, community: Node, result: Optional[CommunityBuildResult]) -> None:
        if self.embedder is None or not community.name:
            return
        try:
            community.embedding = await self.embedder.embed(community.name)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Community name embedding failed for {community.id}: {e}")
            if result is not None:
                result.errors.append(BatchItemError(STAGE, community.id, sanitize_error(e)))

    async def _build_community(
        self, members: List[Node], result: CommunityBuildResult
    ) -> Tuple[Node, List[Edge]]:
        summary = await self.summarize_hierarchically(
            [m.summary or m.name for m in members], result
        )
        name = await self._name_for(summary, truncate(summary, self.config.max_name_length), result)

        now = utc_now()
        community = Node.community(
            name=name, summary=summary, group_id=members[0].group_id, created_at=now
        )
        await self._embed_name(community, result)
        edges = [Edge.membership(community, member, created_at=now) for member in members]
        return community, edges

    # =========================================================================
    # Incremental assignment
    # =========================================================================

    async def determine_entity_community(self, entity: Node) -> Tuple[Optional[Node], bool]:
        """
        Community the entity belongs to, and whether the membership is new.

        Returns (existing community, False) when a HAS_MEMBER edge already
        points at the entity; (modal neighbor community, True) otherwise;
        (None, False) for entities whose neighbors have no community.
        """
        existing = await self.store.get_community_of(entity.id)
        if existing is not None:
            return existing, False

        counts: Counter = Counter()
        communities: Dict[str, Node] = {}
        for neighbor in await self.store.get_node_neighbors(entity.id, entity.group_id):
            community = await self.store.get_community_of(neighbor.node_id)
            if community is not None:
                counts[community.id] += 1
                communities[community.id] = community

        if not counts:
            return None, False
        modal_id = min(counts, key=lambda cid: (-counts[cid], cid))
        return communities[modal_id], True

    async def update_community(self, entity: Node) -> CommunityBuildResult:
        """
        Slot one entity into its community and refresh that community.

        Isolated entities are a no-op. Raises StorageConnectionError if
        storage is unreachable; other failures are recorded in the result.
        """
        result = CommunityBuildResult()
        if entity.type != NodeType.ENTITY:
            return result

        community, is_new = await self.determine_entity_community(entity)
        if community is None:
            return result

        summary = community.summary
        if entity.summary:
            try:
                summary = await self.summarizer.summarize_pair(entity.summary, community.summary)
            except (KeyboardInterrupt, SystemExit, MemoryError):
                raise
            except Exception as e:
                logger.warning(f"Community {community.id} re-summary failed, keeping old summary: {e}")
                result.errors.append(BatchItemError(STAGE, community.id, sanitize_error(e)))

        community.summary = summary
        community.name = await self._name_for(summary, community.name, result)
        community.updated_at = utc_now()
        await self._embed_name(community, result)

        written, errors = await write_each(self.store.upsert_node, [community], STAGE)
        result.errors.extend(errors)
        if not written:
            return result
        result.community_nodes.append(community)

        if is_new:
            edge = Edge.membership(community, entity)
            written_edges, errors = await write_each(self.store.upsert_edge, [edge], STAGE)
            result.community_edges.extend(written_edges)
            result.errors.extend(errors)
        return result

    async def update_communities(self, entities: Sequence[Node]) -> CommunityBuildResult:
        """Incremental update for several entities, in order."""
        combined = CommunityBuildResult()
        for entity in entities:
            try:
                partial = await self.update_community(entity)
            except (StorageConnectionError, ConsistencyError):
                raise
            except (KeyboardInterrupt, SystemExit, MemoryError):
                raise
            except Exception as e:
                logger.warning(f"Community update failed for {entity.id}: {e}", exc_info=True)
                combined.errors.append(BatchItemError(STAGE, entity.id, sanitize_error(e)))
                continue
            combined.community_nodes.extend(partial.community_nodes)
            combined.community_edges.extend(partial.community_edges)
            combined.errors.extend(partial.errors)
        return combined
