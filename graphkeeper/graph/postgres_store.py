"""
PostgreSQL GraphStore: asyncpg pool + pgvector.

Nodes and edges live in two tables of a dedicated schema (default `graph`).
Embeddings are pgvector columns searched by cosine distance; without a query
embedding, name/fact search falls back to pg_trgm similarity.

Connectivity failures (pool creation, dropped connections) raise
StorageConnectionError, which aborts a batch. Query failures raise
GraphStoreError, which the pipeline records per item.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import asyncpg
import numpy as np

from ..config import DatabaseConfig
from ..exceptions import GraphStoreError, StorageConnectionError
from ..utils.async_helpers import pgvector_to_vec, vec_to_pgvector
from .models import HAS_MEMBER, IS_DUPLICATE_OF, Edge, EdgeType, Neighbor, Node, NodeType
from .store import GraphStore

logger = logging.getLogger(__name__)

_NODE_COLS = (
    "id, group_id, node_type, name, summary, entity_type, content, valid_from, "
    "embedding::text AS embedding, attributes, metadata, created_at, updated_at"
)
_EDGE_COLS = (
    "id, group_id, edge_type, source_id, target_id, name, fact, "
    "fact_embedding::text AS fact_embedding, episode_ids, attributes, "
    "valid_from, invalid_at, expired_at, created_at, updated_at"
)

# Errors that mean the database itself is unreachable
_CONNECTION_ERRORS = (
    OSError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
)


def _load_json(value: Any) -> Dict[str, Any]:
    """jsonb arrives as text unless a codec is registered on the pool."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return dict(value)


def _optional_vec(vec: Optional[np.ndarray]) -> Optional[str]:
    return vec_to_pgvector(vec) if vec is not None else None


def _node_from_row(row: asyncpg.Record) -> Node:
    return Node(
        id=row["id"],
        group_id=row["group_id"],
        type=NodeType(row["node_type"]),
        name=row["name"] or "",
        summary=row["summary"] or "",
        entity_type=row["entity_type"] or "",
        content=row["content"] or "",
        valid_from=row["valid_from"],
        embedding=pgvector_to_vec(row["embedding"]),
        attributes=_load_json(row["attributes"]),
        metadata=_load_json(row["metadata"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _edge_from_row(row: asyncpg.Record) -> Edge:
    return Edge(
        id=row["id"],
        group_id=row["group_id"],
        type=EdgeType(row["edge_type"]),
        source_id=row["source_id"],
        target_id=row["target_id"],
        name=row["name"] or "",
        fact=row["fact"] or "",
        fact_embedding=pgvector_to_vec(row["fact_embedding"]),
        episode_ids=list(row["episode_ids"] or []),
        attributes=_load_json(row["attributes"]),
        valid_from=row["valid_from"],
        invalid_at=row["invalid_at"],
        expired_at=row["expired_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresGraphStore(GraphStore):
    """
    PostgreSQL storage for the temporal knowledge graph.

    Uses an asyncpg connection pool. Can share a pool with other components
    or create its own from the DSN in DatabaseConfig.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool] = None,
        config: Optional[DatabaseConfig] = None,
        embedding_dim: int = 384,
    ):
        """
        Args:
            pool: Existing asyncpg pool. The caller owns its lifecycle.
            config: Database settings; its DSN is used when no pool is given
                (this store then owns and closes the pool).
            embedding_dim: Dimension of the pgvector columns
        """
        self.pool = pool
        self.config = config or DatabaseConfig()
        self._owns_pool = pool is None
        self._embedding_dim = embedding_dim
        self._schema = self.config.schema

    @property
    def nodes_table(self) -> str:
        return f"{self._schema}.nodes"

    @property
    def edges_table(self) -> str:
        return f"{self._schema}.edges"

    async def initialize(self) -> None:
        """Create the pool if needed and make sure the schema exists."""
        await self._ensure_pool()
        async with self._connection("initialize") as conn:
            await conn.execute(self._schema_sql())
        logger.info(f"Graph schema '{self._schema}' ready")

    async def _ensure_pool(self) -> None:
        """Lazily create connection pool on first use."""
        if self.pool is not None:
            return
        if not self.config.dsn:
            raise StorageConnectionError("Either pool or DatabaseConfig.dsn must be provided")
        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.config.dsn,
                min_size=self.config.pool_min_size,
                max_size=self.config.pool_max_size,
                command_timeout=self.config.command_timeout,
            )
            logger.info("Graph storage pool created")
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageConnectionError(
                f"Failed to create graph storage pool: {e}", cause=e
            ) from e

    async def close(self) -> None:
        """Close pool if we own it."""
        if self._owns_pool and self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        await self._ensure_pool()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as e:
            raise StorageConnectionError(
                f"Lost connection to graph storage during {operation}: {e}", cause=e
            ) from e
        except asyncpg.PostgresError as e:
            raise GraphStoreError(f"Graph storage {operation} failed: {e}", cause=e) from e

    def _schema_sql(self) -> str:
        s, dim = self._schema, self._embedding_dim
        return f"""
            CREATE EXTENSION IF NOT EXISTS vector;
            CREATE EXTENSION IF NOT EXISTS pg_trgm;
            CREATE SCHEMA IF NOT EXISTS {s};

            CREATE TABLE IF NOT EXISTS {s}.nodes (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                node_type TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                summary TEXT NOT NULL DEFAULT '',
                entity_type TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                valid_from TIMESTAMPTZ,
                embedding vector({dim}),
                attributes JSONB NOT NULL DEFAULT '{{}}',
                metadata JSONB NOT NULL DEFAULT '{{}}',
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ
            );
            CREATE INDEX IF NOT EXISTS nodes_group_type_idx ON {s}.nodes (group_id, node_type);
            CREATE INDEX IF NOT EXISTS nodes_name_trgm_idx ON {s}.nodes USING gin (lower(name) gin_trgm_ops);

            CREATE TABLE IF NOT EXISTS {s}.edges (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                edge_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                fact TEXT NOT NULL DEFAULT '',
                fact_embedding vector({dim}),
                episode_ids TEXT[] NOT NULL DEFAULT '{{}}',
                attributes JSONB NOT NULL DEFAULT '{{}}',
                valid_from TIMESTAMPTZ NOT NULL,
                invalid_at TIMESTAMPTZ,
                expired_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ
            );
            CREATE INDEX IF NOT EXISTS edges_group_type_idx ON {s}.edges (group_id, edge_type);
            CREATE INDEX IF NOT EXISTS edges_source_idx ON {s}.edges (source_id);
            CREATE INDEX IF NOT EXISTS edges_target_idx ON {s}.edges (target_id);
        """

    async def health_check(self) -> bool:
        async with self._connection("health_check") as conn:
            await conn.fetchval("SELECT 1")
        return True

    # =========================================================================
    # Writes
    # =========================================================================

    async def upsert_node(self, node: Node) -> None:
        sql = f"""
            INSERT INTO {self.nodes_table} (
                id, group_id, node_type, name, summary, entity_type, content,
                valid_from, embedding, attributes, metadata, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::vector, $10::jsonb, $11::jsonb, $12, $13)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                summary = EXCLUDED.summary,
                entity_type = EXCLUDED.entity_type,
                content = EXCLUDED.content,
                valid_from = EXCLUDED.valid_from,
                embedding = COALESCE(EXCLUDED.embedding, {self.nodes_table}.embedding),
                attributes = EXCLUDED.attributes,
                metadata = EXCLUDED.metadata,
                updated_at = EXCLUDED.updated_at
        """
        async with self._connection("upsert_node") as conn:
            await conn.execute(
                sql,
                node.id,
                node.group_id,
                node.type.value,
                node.name,
                node.summary,
                node.entity_type,
                node.content,
                node.valid_from,
                _optional_vec(node.embedding),
                json.dumps(node.attributes, default=str),
                json.dumps(node.metadata, default=str),
                node.created_at,
                node.updated_at,
            )

    async def upsert_edge(self, edge: Edge) -> None:
        # episode_ids: ordered set-union so concurrent attestations are kept
        sql = f"""
            INSERT INTO {self.edges_table} (
                id, group_id, edge_type, source_id, target_id, name, fact, fact_embedding,
                episode_ids, attributes, valid_from, invalid_at, expired_at, created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::vector, $9::text[], $10::jsonb,
                    $11, $12, $13, $14, $15)
            ON CONFLICT (id) DO UPDATE SET
                source_id = EXCLUDED.source_id,
                target_id = EXCLUDED.target_id,
                name = EXCLUDED.name,
                fact = EXCLUDED.fact,
                fact_embedding = COALESCE(EXCLUDED.fact_embedding, {self.edges_table}.fact_embedding),
                episode_ids = ARRAY(
                    SELECT eid FROM unnest(
                        {self.edges_table}.episode_ids || EXCLUDED.episode_ids
                    ) WITH ORDINALITY AS t(eid, ord)
                    GROUP BY eid ORDER BY min(ord)
                ),
                attributes = EXCLUDED.attributes,
                valid_from = EXCLUDED.valid_from,
                invalid_at = EXCLUDED.invalid_at,
                expired_at = EXCLUDED.expired_at,
                updated_at = EXCLUDED.updated_at
        """
        async with self._connection("upsert_edge") as conn:
            await conn.execute(
                sql,
                edge.id,
                edge.group_id,
                edge.type.value,
                edge.source_id,
                edge.target_id,
                edge.name,
                edge.fact,
                _optional_vec(edge.fact_embedding),
                list(edge.episode_ids),
                json.dumps(edge.attributes, default=str),
                edge.valid_from,
                edge.invalid_at,
                edge.expired_at,
                edge.created_at,
                edge.updated_at,
            )

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_node(self, node_id: str) -> Optional[Node]:
        async with self._connection("get_node") as conn:
            row = await conn.fetchrow(
                f"SELECT {_NODE_COLS} FROM {self.nodes_table} WHERE id = $1", node_id
            )
        return _node_from_row(row) if row else None

    async def get_nodes(self, node_ids: Sequence[str]) -> List[Node]:
        if not node_ids:
            return []
        async with self._connection("get_nodes") as conn:
            rows = await conn.fetch(
                f"SELECT {_NODE_COLS} FROM {self.nodes_table} WHERE id = ANY($1::text[])",
                list(node_ids),
            )
        by_id = {row["id"]: _node_from_row(row) for row in rows}
        return [by_id[nid] for nid in node_ids if nid in by_id]

    async def get_edge(self, edge_id: str) -> Optional[Edge]:
        async with self._connection("get_edge") as conn:
            row = await conn.fetchrow(
                f"SELECT {_EDGE_COLS} FROM {self.edges_table} WHERE id = $1", edge_id
            )
        return _edge_from_row(row) if row else None

    async def search_nodes(
        self,
        query: str,
        group_id: str,
        embedding: Optional[np.ndarray] = None,
        node_type: NodeType = NodeType.ENTITY,
        limit: int = 50,
        exclude_ids: Sequence[str] = (),
    ) -> List[Node]:
        params: list = [group_id, node_type.value, list(exclude_ids), limit]
        if embedding is not None:
            params.append(vec_to_pgvector(embedding))
            order = "embedding <=> $5::vector"
            match = "embedding IS NOT NULL"
        else:
            params.append(query)
            order = "similarity(lower(name), lower($5)) DESC"
            match = "(lower(name) % lower($5) OR lower(name) = lower($5))"

        sql = f"""
            SELECT {_NODE_COLS} FROM {self.nodes_table}
            WHERE group_id = $1 AND node_type = $2
              AND NOT (id = ANY($3::text[]))
              AND NOT (attributes ? 'merged_into')
              AND {match}
            ORDER BY {order}
            LIMIT $4
        """
        async with self._connection("search_nodes") as conn:
            rows = await conn.fetch(sql, *params)
        return [_node_from_row(row) for row in rows]

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
        params: list = [group_id, list(exclude_ids), limit, IS_DUPLICATE_OF]
        filters = []
        if source_id is not None:
            params.append(source_id)
            filters.append(f"AND source_id = ${len(params)}")
        if target_id is not None:
            params.append(target_id)
            filters.append(f"AND target_id = ${len(params)}")

        if embedding is not None:
            params.append(vec_to_pgvector(embedding))
            order = f"fact_embedding <=> ${len(params)}::vector"
            match = "fact_embedding IS NOT NULL"
        else:
            params.append(query)
            order = f"similarity(lower(fact), lower(${len(params)})) DESC"
            match = f"lower(fact) % lower(${len(params)})"

        sql = f"""
            SELECT {_EDGE_COLS} FROM {self.edges_table}
            WHERE group_id = $1 AND edge_type = 'entity'
              AND expired_at IS NULL
              AND name <> $4
              AND NOT (id = ANY($2::text[]))
              {" ".join(filters)}
              AND {match}
            ORDER BY {order}
            LIMIT $3
        """
        async with self._connection("search_edges") as conn:
            rows = await conn.fetch(sql, *params)
        return [_edge_from_row(row) for row in rows]

    async def get_edges_between(self, node_a: str, node_b: str, group_id: str) -> List[Edge]:
        sql = f"""
            SELECT {_EDGE_COLS} FROM {self.edges_table}
            WHERE group_id = $3 AND edge_type = 'entity' AND expired_at IS NULL
              AND name <> $4
              AND ((source_id = $1 AND target_id = $2) OR (source_id = $2 AND target_id = $1))
            ORDER BY created_at
        """
        async with self._connection("get_edges_between") as conn:
            rows = await conn.fetch(sql, node_a, node_b, group_id, IS_DUPLICATE_OF)
        return [_edge_from_row(row) for row in rows]

    async def get_edges_for_nodes(self, node_ids: Sequence[str], group_id: str) -> List[Edge]:
        if not node_ids:
            return []
        sql = f"""
            SELECT {_EDGE_COLS} FROM {self.edges_table}
            WHERE group_id = $2 AND expired_at IS NULL
              AND (source_id = ANY($1::text[]) OR target_id = ANY($1::text[]))
            ORDER BY created_at, id
        """
        async with self._connection("get_edges_for_nodes") as conn:
            rows = await conn.fetch(sql, list(node_ids), group_id)
        return [_edge_from_row(row) for row in rows]

    async def get_node_neighbors(self, node_id: str, group_id: str) -> List[Neighbor]:
        sql = f"""
            SELECT sub.other_id, count(*) AS edge_count
            FROM (
                SELECT CASE WHEN source_id = $1 THEN target_id ELSE source_id END AS other_id
                FROM {self.edges_table}
                WHERE group_id = $2 AND edge_type = 'entity' AND expired_at IS NULL
                  AND name <> $3
                  AND (source_id = $1 OR target_id = $1)
            ) sub
            JOIN {self.nodes_table} n
              ON n.id = sub.other_id AND n.node_type = 'entity' AND n.group_id = $2
            WHERE sub.other_id <> $1
            GROUP BY sub.other_id
            ORDER BY sub.other_id
        """
        async with self._connection("get_node_neighbors") as conn:
            rows = await conn.fetch(sql, node_id, group_id, IS_DUPLICATE_OF)
        return [Neighbor(node_id=row["other_id"], edge_count=int(row["edge_count"])) for row in rows]

    async def get_entity_nodes(self, group_id: str) -> List[Node]:
        sql = f"""
            SELECT {_NODE_COLS} FROM {self.nodes_table}
            WHERE group_id = $1 AND node_type = 'entity'
              AND NOT (attributes ? 'merged_into')
            ORDER BY id
        """
        async with self._connection("get_entity_nodes") as conn:
            rows = await conn.fetch(sql, group_id)
        return [_node_from_row(row) for row in rows]

    async def get_group_ids(self) -> List[str]:
        async with self._connection("get_group_ids") as conn:
            rows = await conn.fetch(
                f"SELECT DISTINCT group_id FROM {self.nodes_table} "
                f"WHERE node_type = 'entity' ORDER BY group_id"
            )
        return [row["group_id"] for row in rows]

    async def get_episodes_in_range(
        self, group_id: str, start: datetime, end: datetime, limit: int = 50
    ) -> List[Node]:
        sql = f"""
            SELECT {_NODE_COLS} FROM {self.nodes_table}
            WHERE group_id = $1 AND node_type = 'episodic'
              AND valid_from >= $2 AND valid_from < $3
            ORDER BY valid_from DESC
            LIMIT $4
        """
        async with self._connection("get_episodes_in_range") as conn:
            rows = await conn.fetch(sql, group_id, start, end, limit)
        return [_node_from_row(row) for row in rows]

    async def get_community_of(self, node_id: str) -> Optional[Node]:
        cols = ", ".join(f"n.{c.strip()}" for c in _NODE_COLS.split(","))
        sql = f"""
            SELECT {cols}
            FROM {self.edges_table} e
            JOIN {self.nodes_table} n ON n.id = e.source_id
            WHERE e.target_id = $1 AND e.edge_type = 'community' AND e.name = $2
              AND e.expired_at IS NULL AND n.node_type = 'community'
            ORDER BY e.created_at DESC
            LIMIT 1
        """
        async with self._connection("get_community_of") as conn:
            row = await conn.fetchrow(sql, node_id, HAS_MEMBER)
        return _node_from_row(row) if row else None

    async def get_membership_edges(self, group_id: str) -> List[Edge]:
        sql = f"""
            SELECT {_EDGE_COLS} FROM {self.edges_table}
            WHERE group_id = $1 AND edge_type = 'community' AND name = $2
              AND expired_at IS NULL
        """
        async with self._connection("get_membership_edges") as conn:
            rows = await conn.fetch(sql, group_id, HAS_MEMBER)
        return [_edge_from_row(row) for row in rows]

    async def has_edge(self, source_id: str, target_id: str, name: str) -> bool:
        sql = f"""
            SELECT EXISTS (
                SELECT 1 FROM {self.edges_table}
                WHERE source_id = $1 AND target_id = $2 AND name = $3 AND expired_at IS NULL
            )
        """
        async with self._connection("has_edge") as conn:
            return bool(await conn.fetchval(sql, source_id, target_id, name))
