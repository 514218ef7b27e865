"""
BatchOrchestrator: one ingestion batch through the consistency engine.

Phases:
    1. validate          group id, node/edge group membership, edge time order
    2. context           previous episodes of the group (context window)
    3. identity          IdentityResolver -> early persist (canonical nodes,
                         duplicate edges, stored edges rewired onto survivors)
    4. facts             FactResolver -> early persist (resolved + invalidated)
    5. episodes          episode nodes + MENTIONED_IN edges
    6. communities       optional full rebuild or incremental update

Item-level failures are collected in BatchResult.errors and never discard
successful work. Losing the storage connection aborts the batch with
StorageConnectionError; already-persisted writes stay and a re-run resolves
to the same state.

add_triplet() runs a single (source, edge, target) fact through the same
identity and fact phases without writing an episode.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..config import GraphkeeperConfig
from ..exceptions import StorageConnectionError, ValidationError
from ..providers.factory import create_provider
from ..usage_tracker import UsageTracker, get_global_tracker
from ..utils.async_helpers import run_async_safe
from ..utils.logger import setup_logger
from ..utils.security import sanitize_error
from .arbiter import LLMArbiter
from .cluster_engine import ClusterEngine
from .embedder import GraphEmbedder
from .fact_resolver import FactResolver
from .identity_map import IdentityMap
from .identity_resolver import IdentityResolver
from .memory_store import InMemoryGraphStore
from .models import BatchItemError, Edge, EdgeType, Node, NodeType, validate_group_id
from .postgres_store import PostgresGraphStore
from .store import GraphStore, write_each
from .summarizer import LLMSummarizer
from .temporal import validate_edge_temporal_consistency

logger = logging.getLogger(__name__)


@dataclass
class Batch:
    """Extracted episodes, entities (keyed by episode id) and relationships of one group."""

    group_id: str
    episodes: List[Node] = field(default_factory=list)
    nodes_by_episode: Dict[str, List[Node]] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)


@dataclass
class BatchOptions:
    update_communities: bool = False  # incremental, per resolved entity
    build_communities: bool = False  # full rebuild of the group (wins over incremental)


@dataclass
class BatchResult:
    """Everything a batch resolved, plus the non-fatal failures."""

    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    invalidated_edges: List[Edge] = field(default_factory=list)
    identity_map: IdentityMap = field(default_factory=dict)
    community_nodes: List[Node] = field(default_factory=list)
    community_edges: List[Edge] = field(default_factory=list)
    episodic_edges: List[Edge] = field(default_factory=list)
    errors: List[BatchItemError] = field(default_factory=list)
    duration_seconds: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": len(self.nodes),
            "edges": len(self.edges),
            "invalidated_edges": len(self.invalidated_edges),
            "merged_ids": sum(1 for k, v in self.identity_map.items() if k != v),
            "community_nodes": len(self.community_nodes),
            "community_edges": len(self.community_edges),
            "episodic_edges": len(self.episodic_edges),
            "errors": len(self.errors),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class BatchOrchestrator:
    """Sequences identity resolution, fact resolution and community maintenance."""

    def __init__(
        self,
        store: GraphStore,
        identity_resolver: IdentityResolver,
        fact_resolver: FactResolver,
        cluster_engine: Optional[ClusterEngine] = None,
        context_window_hours: int = 168,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        self.store = store
        self.identity_resolver = identity_resolver
        self.fact_resolver = fact_resolver
        self.cluster_engine = cluster_engine
        self.context_window_hours = context_window_hours
        self.usage_tracker = usage_tracker or get_global_tracker()

    @classmethod
    def from_config(
        cls, config: Optional[GraphkeeperConfig] = None, store: Optional[GraphStore] = None
    ) -> "BatchOrchestrator":
        """
        Wire the full engine from configuration.

        Uses PostgresGraphStore when DATABASE_URL is set, else InMemoryGraphStore.
        """
        config = config or GraphkeeperConfig.from_env()
        setup_logger(log_level=config.log_level, log_file=config.log_file)
        if store is None:
            if config.database.dsn:
                store = PostgresGraphStore(
                    config=config.database, embedding_dim=config.embedding.dimension
                )
            else:
                logger.info("No DATABASE_URL configured, using in-memory graph store")
                store = InMemoryGraphStore()

        provider = create_provider(config.llm.model)
        embedder = GraphEmbedder(config.embedding)
        tracker = UsageTracker()
        arbiter = LLMArbiter(provider, config.llm, tracker)
        summarizer = LLMSummarizer(provider, config.llm, config.cluster.max_name_length, tracker)

        return cls(
            store=store,
            identity_resolver=IdentityResolver(
                store, arbiter, embedder, config.identity, config.concurrency
            ),
            fact_resolver=FactResolver(store, arbiter, embedder, config.fact, config.concurrency),
            cluster_engine=ClusterEngine(store, summarizer, embedder, config.cluster),
            context_window_hours=config.identity.context_window_hours,
            usage_tracker=tracker,
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    async def process_batch(self, batch: Batch, options: Optional[BatchOptions] = None) -> BatchResult:
        """
        Resolve one batch end to end.

        Raises:
            ValidationError: If the batch's group id is invalid
            StorageConnectionError: If storage is unreachable (batch aborted)
        """
        options = options or BatchOptions()
        start = time.perf_counter()
        result = BatchResult()
        group_id = batch.group_id
        tokens_before = (self.usage_tracker.total_input_tokens, self.usage_tracker.total_output_tokens)

        validate_group_id(group_id)
        await self.store.health_check()

        nodes_by_episode, edges = self._validate(batch, result)
        context = await self._context(batch, result)

        # Identity resolution + early persist
        identity = await self.identity_resolver.resolve(nodes_by_episode, group_id, context)
        result.errors.extend(identity.errors)
        result.identity_map = identity.identity_map
        result.errors.extend(await self.identity_resolver.persist(identity))
        result.nodes = identity.nodes

        rewired = await self.identity_resolver.rewire_persisted_edges(identity.identity_map, group_id)
        _, errors = await write_each(self.store.upsert_edge, rewired, "identity")
        result.errors.extend(errors)

        # Fact resolution + early persist
        facts = await self.fact_resolver.resolve(edges, identity.identity_map, group_id, context)
        result.errors.extend(facts.errors)
        result.errors.extend(await self.fact_resolver.persist(facts))
        result.edges = facts.edges
        result.invalidated_edges = facts.invalidated_edges

        await self._write_episodes(batch, identity.nodes, identity.identity_map, result)

        if self.cluster_engine is not None:
            if options.build_communities:
                built = await self.cluster_engine.build_communities([group_id])
            elif options.update_communities:
                built = await self.cluster_engine.update_communities(identity.nodes)
            else:
                built = None
            if built is not None:
                result.community_nodes = built.community_nodes
                result.community_edges = built.community_edges
                result.errors.extend(built.errors)

        result.duration_seconds = time.perf_counter() - start
        result.input_tokens = self.usage_tracker.total_input_tokens - tokens_before[0]
        result.output_tokens = self.usage_tracker.total_output_tokens - tokens_before[1]
        if result.ok:
            logger.info(f"Batch for group '{group_id}' done: {result.stats()}")
        else:
            logger.warning(
                f"Batch for group '{group_id}' done with {len(result.errors)} item errors: {result.stats()}"
            )
        return result

    async def add_triplet(
        self,
        source: Node,
        edge: Edge,
        target: Node,
        group_id: Optional[str] = None,
        options: Optional[BatchOptions] = None,
    ) -> BatchResult:
        """
        Insert one (source, edge, target) fact without an episode.

        Both nodes go through identity resolution and the edge through fact
        resolution exactly like batch items, so the fact lands on canonical
        nodes and may invalidate older facts. No episode or MENTIONED_IN edge
        is written.

        Raises:
            ValidationError: If the edge does not connect source -> target,
                its time fields are out of order, or the group id is invalid
            StorageConnectionError: If storage is unreachable
        """
        group_id = group_id or edge.group_id
        if edge.source_id != source.id or edge.target_id != target.id:
            raise ValidationError(
                f"Edge {edge.id} does not connect {source.id} -> {target.id}",
                details={"source_id": edge.source_id, "target_id": edge.target_id},
            )
        validate_edge_temporal_consistency(edge)

        episode_id = edge.originating_episode_id or ""
        batch = Batch(
            group_id=group_id,
            nodes_by_episode={episode_id: [source, target]},
            edges=[edge],
        )
        return await self.process_batch(batch, options)

    def process_batch_sync(self, batch: Batch, options: Optional[BatchOptions] = None) -> BatchResult:
        """Synchronous wrapper around process_batch()."""
        return run_async_safe(
            self.process_batch(batch, options), timeout=None, operation_name="process_batch"
        )

    # =========================================================================
    # Phases
    # =========================================================================

    def _validate(self, batch: Batch, result: BatchResult):
        """Drop items that cannot be resolved, recording why."""
        group_id = batch.group_id
        nodes_by_episode: Dict[str, List[Node]] = {}
        for episode_id, nodes in batch.nodes_by_episode.items():
            kept = []
            for node in nodes:
                if node.group_id != group_id:
                    result.errors.append(
                        BatchItemError("validate", node.id, f"node group '{node.group_id}' != '{group_id}'")
                    )
                elif node.type != NodeType.ENTITY:
                    result.errors.append(
                        BatchItemError("validate", node.id, f"expected entity node, got {node.type.value}")
                    )
                else:
                    kept.append(node)
            nodes_by_episode[episode_id] = kept

        edges: List[Edge] = []
        for edge in batch.edges:
            if edge.group_id != group_id:
                result.errors.append(
                    BatchItemError("validate", edge.id, f"edge group '{edge.group_id}' != '{group_id}'")
                )
                continue
            if edge.type != EdgeType.ENTITY:
                result.errors.append(
                    BatchItemError("validate", edge.id, f"expected relationship edge, got {edge.type.value}")
                )
                continue
            try:
                validate_edge_temporal_consistency(edge)
            except ValidationError as e:
                result.errors.append(BatchItemError("validate", edge.id, e.message))
                continue
            edges.append(edge)
        return nodes_by_episode, edges

    async def _context(self, batch: Batch, result: BatchResult) -> List[str]:
        """Content of earlier episodes of the group within the context window."""
        times = [e.valid_from for e in batch.episodes if e.valid_from is not None]
        if not times or self.context_window_hours <= 0:
            return []
        reference: datetime = min(times)
        batch_ids = {e.id for e in batch.episodes}
        try:
            previous = await self.store.get_episodes_in_range(
                batch.group_id, reference - timedelta(hours=self.context_window_hours), reference
            )
        except StorageConnectionError:
            raise
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Could not load previous episodes: {e}", exc_info=True)
            result.errors.append(BatchItemError("context", batch.group_id, sanitize_error(e)))
            return []
        return [ep.content for ep in previous if ep.id not in batch_ids and ep.content]

    async def _write_episodes(
        self,
        batch: Batch,
        canonical_nodes: Sequence[Node],
        identity_map: IdentityMap,
        result: BatchResult,
    ) -> None:
        """Episode nodes (with their entity edge ids) and MENTIONED_IN edges."""
        by_id = {n.id: n for n in canonical_nodes}
        mentions: List[Edge] = []
        for episode in batch.episodes:
            episode.metadata["entity_edges"] = [
                e.id for e in result.edges if episode.id in e.episode_ids
            ]
            seen = set()
            for node in batch.nodes_by_episode.get(episode.id, []):
                canonical = by_id.get(identity_map.get(node.id, node.id))
                if canonical is None or canonical.id in seen:
                    continue
                seen.add(canonical.id)
                mentions.append(Edge.mention(episode, canonical))

        written, errors = await write_each(self.store.upsert_node, batch.episodes, "episodes")
        result.errors.extend(errors)
        written_ids = {e.id for e in written}
        mentions = [m for m in mentions if m.source_id in written_ids]
        written_mentions, errors = await write_each(self.store.upsert_edge, mentions, "episodes")
        result.episodic_edges = written_mentions
        result.errors.extend(errors)
