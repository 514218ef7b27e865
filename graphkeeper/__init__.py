"""
graphkeeper: consistency engine for temporally-versioned knowledge graphs.

Entity deduplication, bitemporal fact invalidation and community detection
over an incrementally built graph, backed by PostgreSQL + pgvector or an
in-process store.
"""

__version__ = "0.1.0"

from .config import GraphkeeperConfig
from .exceptions import GraphkeeperError, StorageConnectionError
from .graph import Batch, BatchOptions, BatchOrchestrator, BatchResult, Edge, Node

__all__ = [
    "__version__",
    "GraphkeeperConfig",
    "GraphkeeperError",
    "StorageConnectionError",
    "Batch",
    "BatchOptions",
    "BatchOrchestrator",
    "BatchResult",
    "Edge",
    "Node",
]
