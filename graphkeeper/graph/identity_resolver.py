"""
IdentityResolver: cross-batch entity deduplication.

Pipeline per batch:
1. Embed candidate names that arrive without an embedding.
2. Block: bounded storage search + in-batch peers (same normalized name or
   cosine >= threshold).
3. Arbitrate each candidate against its blocked set (bounded concurrency).
   A failed or malformed verdict degrades to "novel" and is recorded.
4. Collapse confirmed pairs with union-find; the canonical member of each
   component is the one created first (ties: smallest id).
5. Merge absorbed members into the canonical node and build a flat
   identity map covering every candidate id.

persist() writes the result back before fact resolution starts so other
batches see the canonical set.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import ConcurrencyConfig, IdentityResolutionConfig
from ..exceptions import StorageConnectionError
from ..utils.async_helpers import cosine_similarity, gather_bounded
from ..utils.security import sanitize_error
from ..utils.text_helpers import normalize_name
from .arbiter import LLMArbiter
from .embedder import GraphEmbedder
from .identity_map import IdentityMap, build_identity_map, verify_identity_map
from .models import IS_DUPLICATE_OF, BatchItemError, Edge, EdgeType, Node, NodeType, utc_now
from .store import GraphStore, write_each

logger = logging.getLogger(__name__)

STAGE = "identity"


@dataclass
class IdentityResolution:
    """Output of one IdentityResolver run."""

    nodes: List[Node] = field(default_factory=list)  # canonical nodes to persist
    identity_map: IdentityMap = field(default_factory=dict)
    duplicate_pairs: List[Tuple[str, str]] = field(default_factory=list)
    duplicate_edges: List[Edge] = field(default_factory=list)  # IS_DUPLICATE_OF
    absorbed_nodes: List[Node] = field(default_factory=list)  # persisted nodes folded away
    errors: List[BatchItemError] = field(default_factory=list)

    def canonical_id(self, node_id: str) -> str:
        return self.identity_map.get(node_id, node_id)

    @property
    def merged_count(self) -> int:
        return sum(1 for k, v in self.identity_map.items() if k != v)


def _creation_key(node: Node):
    return (node.created_at, node.id)


class IdentityResolver:
    """Deduplicates candidate entities against each other and the stored graph."""

    def __init__(
        self,
        store: GraphStore,
        arbiter: LLMArbiter,
        embedder: Optional[GraphEmbedder] = None,
        config: Optional[IdentityResolutionConfig] = None,
        concurrency: Optional[ConcurrencyConfig] = None,
    ):
        self.store = store
        self.arbiter = arbiter
        self.embedder = embedder
        self.config = config or IdentityResolutionConfig()
        self.concurrency = concurrency or ConcurrencyConfig()

    async def resolve(
        self,
        nodes_by_episode: Dict[str, List[Node]],
        group_id: str,
        context: Sequence[str] = (),
    ) -> IdentityResolution:
        """
        Deduplicate a batch of candidate entities.

        Args:
            nodes_by_episode: Candidate entity nodes keyed by originating episode id
            group_id: Tenant partition all candidates belong to
            context: Content of previous episodes shown to the arbiter

        Returns:
            IdentityResolution with canonical nodes and a path-compressed identity map

        Raises:
            StorageConnectionError: If storage becomes unreachable
            IdentityMapError: If the identity map is inconsistent
        """
        result = IdentityResolution()
        candidates: List[Node] = []
        episode_of: Dict[str, str] = {}
        for episode_id, nodes in nodes_by_episode.items():
            for node in nodes:
                if node.type != NodeType.ENTITY or node.id in episode_of:
                    continue
                episode_of[node.id] = episode_id
                candidates.append(node)

        if not candidates:
            return result

        await self._embed_missing(candidates, result)

        batch_ids = [c.id for c in candidates]
        blocked = await gather_bounded(
            (self._block(c, candidates, group_id, batch_ids, result) for c in candidates),
            self.concurrency.semaphore_limit,
        )
        verdicts = await gather_bounded(
            (self._arbitrate(c, related, context, result) for c, related in zip(candidates, blocked)),
            self.concurrency.semaphore_limit,
        )

        lookup: Dict[str, Node] = {c.id: c for c in candidates}
        for c, duplicates in zip(candidates, verdicts):
            for dup in duplicates:
                lookup.setdefault(dup.id, dup)
                result.duplicate_pairs.append((c.id, dup.id))

        result.identity_map = build_identity_map(
            lookup.keys(),
            result.duplicate_pairs,
            sort_key=lambda node_id: _creation_key(lookup[node_id]),
        )
        verify_identity_map(result.identity_map)

        self._merge_components(lookup, episode_of, set(batch_ids), result)

        logger.info(
            f"Identity resolution: {len(candidates)} candidates, "
            f"{len(result.duplicate_pairs)} duplicate pairs, "
            f"{len(result.nodes)} canonical nodes, {len(result.errors)} warnings"
        )
        return result

    async def _embed_missing(self, candidates: List[Node], result: IdentityResolution) -> None:
        missing = [c for c in candidates if c.embedding is None and c.name]
        if not missing or self.embedder is None:
            return
        try:
            vectors = await self.embedder.embed_many([c.name for c in missing])
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Name embedding failed, blocking on names only: {e}", exc_info=True)
            result.errors.append(BatchItemError(STAGE, "embeddings", sanitize_error(e)))
            return
        for node, vec in zip(missing, vectors):
            node.embedding = vec

    async def _block(
        self,
        candidate: Node,
        candidates: List[Node],
        group_id: str,
        batch_ids: List[str],
        result: IdentityResolution,
    ) -> List[Node]:
        """Bounded comparison set: storage matches first, then in-batch peers."""
        related: List[Node] = []
        try:
            related = await self.store.search_nodes(
                candidate.name,
                group_id,
                embedding=candidate.embedding,
                node_type=NodeType.ENTITY,
                limit=self.config.search_limit,
                exclude_ids=batch_ids,
            )
        except StorageConnectionError:
            raise
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Node search failed for '{candidate.name}': {e}", exc_info=True)
            result.errors.append(BatchItemError(STAGE, candidate.id, sanitize_error(e)))

        name = normalize_name(candidate.name)
        peers = []
        for other in candidates:
            if other.id == candidate.id:
                continue
            same_name = bool(name) and normalize_name(other.name) == name
            if same_name or (
                cosine_similarity(candidate.embedding, other.embedding)
                >= self.config.similarity_threshold
            ):
                peers.append(other)
            if len(peers) >= self.config.max_peers:
                break

        seen = {n.id for n in related}
        related.extend(p for p in peers if p.id not in seen)
        return related

    async def _arbitrate(
        self,
        candidate: Node,
        related: List[Node],
        context: Sequence[str],
        result: IdentityResolution,
    ) -> List[Node]:
        """Duplicates of `candidate` among `related`; [] on arbitration failure."""
        if not related:
            return []
        try:
            verdict = await self.arbiter.decide_node(candidate, related, context)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(
                f"Arbitration failed for '{candidate.name}' ({candidate.id}), treating as novel: {e}"
            )
            result.errors.append(BatchItemError(STAGE, candidate.id, sanitize_error(e)))
            return []
        return [related[i] for i in verdict.all_indices() if 0 <= i < len(related)]

    def _merge_components(
        self,
        lookup: Dict[str, Node],
        episode_of: Dict[str, str],
        batch_ids: set,
        result: IdentityResolution,
    ) -> None:
        components: Dict[str, List[Node]] = {}
        for node_id, canonical in result.identity_map.items():
            components.setdefault(canonical, []).append(lookup[node_id])

        now = utc_now()
        emitted = set()
        for canonical_id, members in components.items():
            # Components without a candidate are untouched stored nodes
            if not any(m.id in batch_ids for m in members):
                continue
            canonical = lookup[canonical_id]
            for member in sorted(members, key=_creation_key):
                if member.id == canonical_id:
                    continue
                canonical.merge_from(member)
                if member.id not in batch_ids:
                    member.attributes["merged_into"] = canonical_id
                    member.updated_at = now
                    result.absorbed_nodes.append(member)
                result.duplicate_edges.append(
                    Edge.relationship(
                        source_id=member.id,
                        target_id=canonical_id,
                        name=IS_DUPLICATE_OF,
                        fact=f"{member.name} is a duplicate of {canonical.name}",
                        group_id=canonical.group_id,
                        valid_from=now,
                        episode_ids=[episode_of[member.id]] if episode_of.get(member.id) else [],
                        created_at=now,
                    )
                )
            if canonical_id not in emitted:
                emitted.add(canonical_id)
                result.nodes.append(canonical)

    async def persist(self, resolution: IdentityResolution) -> List[BatchItemError]:
        """
        Early write of canonical nodes, absorbed nodes and duplicate edges.

        Duplicate edges already present in storage are skipped. Individual
        write failures are returned; lost connectivity propagates.
        """
        errors: List[BatchItemError] = []
        _, node_errors = await write_each(
            self.store.upsert_node, resolution.nodes + resolution.absorbed_nodes, STAGE
        )
        errors.extend(node_errors)

        fresh: List[Edge] = []
        for edge in resolution.duplicate_edges:
            try:
                exists = await self.store.has_edge(edge.source_id, edge.target_id, IS_DUPLICATE_OF)
            except StorageConnectionError:
                raise
            except (KeyboardInterrupt, SystemExit, MemoryError):
                raise
            except Exception as e:
                logger.warning(f"Duplicate-edge lookup failed for {edge.source_id}: {e}")
                exists = False
            if not exists:
                fresh.append(edge)
        resolution.duplicate_edges = fresh
        _, edge_errors = await write_each(self.store.upsert_edge, fresh, STAGE)
        errors.extend(edge_errors)
        return errors

    async def rewire_persisted_edges(self, identity_map: IdentityMap, group_id: str) -> List[Edge]:
        """
        Stored edges whose endpoints were folded away, rewritten through the
        identity map. The caller persists the returned edges.

        Relationship, Mention and Membership edges are moved onto the
        canonical node. A Membership or Mention the canonical node already
        holds is not duplicated: the absorbed node's copy is expired instead.
        IS_DUPLICATE_OF markers are left alone.
        """
        absorbed = sorted(k for k, v in identity_map.items() if k != v)
        if not absorbed:
            return []
        edges = await self.store.get_edges_for_nodes(absorbed, group_id)
        now = utc_now()
        in_community: Dict[str, bool] = {}
        mentioned = set()
        rewired: List[Edge] = []
        expired = 0
        for edge in edges:
            if edge.name == IS_DUPLICATE_OF:
                continue
            source = identity_map.get(edge.source_id, edge.source_id)
            target = identity_map.get(edge.target_id, edge.target_id)
            if (source, target) == (edge.source_id, edge.target_id):
                continue

            if edge.type == EdgeType.COMMUNITY:
                if target not in in_community:
                    in_community[target] = await self.store.get_community_of(target) is not None
                if in_community[target]:
                    rewired.append(edge.copy(expired_at=now, updated_at=now))
                    expired += 1
                    continue
                in_community[target] = True
            elif edge.type == EdgeType.EPISODIC:
                key = (source, target)
                if key in mentioned or await self.store.has_edge(source, target, edge.name):
                    rewired.append(edge.copy(expired_at=now, updated_at=now))
                    expired += 1
                    continue
                mentioned.add(key)

            rewired.append(edge.copy(source_id=source, target_id=target, updated_at=now))
        if rewired:
            logger.info(
                f"Rewired {len(rewired) - expired} stored edges onto canonical nodes, "
                f"expired {expired} redundant ones"
            )
        return rewired
