"""
Temporally-versioned knowledge graph consistency engine.

Keeps an incrementally built graph consistent across ingestion batches:

- IdentityResolver: entity deduplication (union-find + flat identity map)
- FactResolver: bitemporal relationship deduplication and invalidation
- ClusterEngine: label propagation communities + hierarchical summaries
- BatchOrchestrator: runs the stages with early persistence and collects
  item-level failures

Usage:
    from graphkeeper.graph import Batch, BatchOrchestrator, Node

    orchestrator = BatchOrchestrator.from_config()
    result = await orchestrator.process_batch(batch)
    print(result.stats())
"""

from .arbiter import DEFAULT_FACT_TYPE, EdgeVerdict, LLMArbiter, NodeVerdict
from .cluster_engine import ClusterEngine, CommunityBuildResult
from .embedder import GraphEmbedder
from .fact_resolver import FactResolution, FactResolver, collapse_exact_duplicates
from .identity_map import (
    IdentityMap,
    UnionFind,
    apply_identity_map,
    build_identity_map,
    compress_identity_map,
    resolve_edge_pointers,
    verify_identity_map,
)
from .identity_resolver import IdentityResolution, IdentityResolver
from .label_propagation import build_projection, label_propagation
from .memory_store import InMemoryGraphStore
from .models import (
    HAS_MEMBER,
    IS_DUPLICATE_OF,
    MENTIONED_IN,
    BatchItemError,
    Edge,
    EdgeType,
    Neighbor,
    Node,
    NodeType,
    validate_group_id,
)
from .orchestrator import Batch, BatchOptions, BatchOrchestrator, BatchResult
from .postgres_store import PostgresGraphStore
from .store import GraphStore
from .summarizer import LLMSummarizer
from .temporal import (
    edge_lifespan,
    extend_validity,
    get_active_edges_at_time,
    resolve_edge_contradictions,
    validate_edge_temporal_consistency,
)

__all__ = [
    # Models
    "Node",
    "NodeType",
    "Edge",
    "EdgeType",
    "Neighbor",
    "BatchItemError",
    "MENTIONED_IN",
    "HAS_MEMBER",
    "IS_DUPLICATE_OF",
    "validate_group_id",
    # Storage
    "GraphStore",
    "InMemoryGraphStore",
    "PostgresGraphStore",
    # Identity
    "IdentityMap",
    "UnionFind",
    "build_identity_map",
    "compress_identity_map",
    "verify_identity_map",
    "apply_identity_map",
    "resolve_edge_pointers",
    "IdentityResolver",
    "IdentityResolution",
    # Facts
    "FactResolver",
    "FactResolution",
    "collapse_exact_duplicates",
    "validate_edge_temporal_consistency",
    "resolve_edge_contradictions",
    "extend_validity",
    "get_active_edges_at_time",
    "edge_lifespan",
    # Communities
    "ClusterEngine",
    "CommunityBuildResult",
    "build_projection",
    "label_propagation",
    # Collaborators
    "LLMArbiter",
    "NodeVerdict",
    "EdgeVerdict",
    "DEFAULT_FACT_TYPE",
    "LLMSummarizer",
    "GraphEmbedder",
    # Orchestration
    "Batch",
    "BatchOptions",
    "BatchResult",
    "BatchOrchestrator",
]
