"""Tests for PostgresGraphStore SQL plumbing (mocked asyncpg pool, no live database)."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import numpy as np
import pytest

from graphkeeper.config import DatabaseConfig
from graphkeeper.exceptions import GraphStoreError, StorageConnectionError
from graphkeeper.graph.models import Edge, EdgeType, Node, NodeType
from graphkeeper.graph.postgres_store import PostgresGraphStore

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_store_with_mock_pool():
    """PostgresGraphStore over a mocked pool; returns (store, conn)."""
    conn = AsyncMock()
    acq = AsyncMock()
    acq.__aenter__ = AsyncMock(return_value=conn)
    acq.__aexit__ = AsyncMock(return_value=False)
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=acq)
    return PostgresGraphStore(pool=pool), conn


def _node_row(**overrides):
    row = {
        "id": "alice",
        "group_id": "g",
        "node_type": "entity",
        "name": "Alice",
        "summary": "Engineer",
        "entity_type": "PERSON",
        "content": None,
        "valid_from": None,
        "embedding": "[0.6,0.8]",
        "attributes": json.dumps({"role": "engineer"}),
        "metadata": "{}",
        "created_at": JAN_1,
        "updated_at": None,
    }
    row.update(overrides)
    return row


def _edge_row(**overrides):
    row = {
        "id": "e1",
        "group_id": "g",
        "edge_type": "entity",
        "source_id": "alice",
        "target_id": "acme",
        "name": "WORKS_AT",
        "fact": "Alice works at Acme",
        "fact_embedding": None,
        "episode_ids": ["ep1", "ep2"],
        "attributes": {},
        "valid_from": JAN_1,
        "invalid_at": None,
        "expired_at": None,
        "created_at": JAN_1,
        "updated_at": None,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Connection handling
# ---------------------------------------------------------------------------


class TestConnectionHandling:
    @pytest.mark.anyio
    async def test_health_check(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchval = AsyncMock(return_value=1)
        assert await store.health_check() is True

    @pytest.mark.anyio
    async def test_dropped_connection_is_fatal(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchval = AsyncMock(side_effect=ConnectionResetError("reset by peer"))
        with pytest.raises(StorageConnectionError):
            await store.health_check()

    @pytest.mark.anyio
    async def test_interface_error_is_fatal(self):
        store, conn = _make_store_with_mock_pool()
        conn.execute = AsyncMock(side_effect=asyncpg.InterfaceError("connection is closed"))
        with pytest.raises(StorageConnectionError):
            await store.upsert_node(Node.entity("Alice", "g"))

    @pytest.mark.anyio
    async def test_query_error_is_item_level(self):
        store, conn = _make_store_with_mock_pool()
        conn.execute = AsyncMock(side_effect=asyncpg.PostgresError("value too long"))
        with pytest.raises(GraphStoreError) as exc_info:
            await store.upsert_node(Node.entity("Alice", "g"))
        assert not isinstance(exc_info.value, StorageConnectionError)

    @pytest.mark.anyio
    async def test_missing_pool_and_dsn(self):
        store = PostgresGraphStore(config=DatabaseConfig(dsn=None))
        with pytest.raises(StorageConnectionError):
            await store.get_node("alice")

    @pytest.mark.anyio
    async def test_close_leaves_shared_pool_open(self):
        store, _ = _make_store_with_mock_pool()
        store.pool.close = AsyncMock()
        await store.close()
        store.pool.close.assert_not_called()

    @pytest.mark.anyio
    async def test_initialize_creates_schema(self):
        store, conn = _make_store_with_mock_pool()
        await store.initialize()
        sql = conn.execute.call_args[0][0]
        assert "CREATE EXTENSION IF NOT EXISTS vector" in sql
        assert "graph.nodes" in sql and "graph.edges" in sql
        assert "vector(384)" in sql


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    @pytest.mark.anyio
    async def test_upsert_node_serializes_fields(self):
        store, conn = _make_store_with_mock_pool()
        node = Node.entity("Alice", "g", node_id="alice", embedding=np.array([0.5, 0.5]))
        node.attributes["role"] = "engineer"
        await store.upsert_node(node)

        args = conn.execute.call_args[0]
        assert "ON CONFLICT (id) DO UPDATE" in args[0]
        assert args[1] == "alice"
        assert args[3] == "entity"
        assert args[9] == "[0.5,0.5]"
        assert json.loads(args[10]) == {"role": "engineer"}

    @pytest.mark.anyio
    async def test_upsert_edge_merges_episode_ids_in_sql(self):
        store, conn = _make_store_with_mock_pool()
        edge = Edge.relationship("alice", "acme", "WORKS_AT", "fact", "g", episode_ids=["ep1"])
        await store.upsert_edge(edge)

        args = conn.execute.call_args[0]
        assert "WITH ORDINALITY" in args[0]
        assert args[9] == ["ep1"]
        assert args[8] is None  # no fact embedding


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.anyio
    async def test_get_node_parses_row(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchrow = AsyncMock(return_value=_node_row())
        node = await store.get_node("alice")
        assert node.type == NodeType.ENTITY
        assert node.attributes == {"role": "engineer"}
        assert node.content == ""
        np.testing.assert_allclose(node.embedding, [0.6, 0.8], rtol=1e-6)

    @pytest.mark.anyio
    async def test_get_node_missing(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchrow = AsyncMock(return_value=None)
        assert await store.get_node("ghost") is None

    @pytest.mark.anyio
    async def test_get_nodes_keeps_request_order(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetch = AsyncMock(return_value=[_node_row(id="b"), _node_row(id="a")])
        nodes = await store.get_nodes(["a", "missing", "b"])
        assert [n.id for n in nodes] == ["a", "b"]

    @pytest.mark.anyio
    async def test_get_edge_parses_row(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchrow = AsyncMock(return_value=_edge_row())
        edge = await store.get_edge("e1")
        assert edge.type == EdgeType.ENTITY
        assert edge.episode_ids == ["ep1", "ep2"]
        assert edge.fact_embedding is None
        assert edge.is_current

    @pytest.mark.anyio
    async def test_search_nodes_by_embedding(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetch = AsyncMock(return_value=[_node_row()])
        results = await store.search_nodes("Alice", "g", embedding=np.array([1.0, 0.0]), limit=5)

        sql, *params = conn.fetch.call_args[0]
        assert "<=>" in sql
        assert "merged_into" in sql
        assert params[0] == "g"
        assert params[3] == 5
        assert [n.id for n in results] == ["alice"]

    @pytest.mark.anyio
    async def test_search_nodes_by_text(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetch = AsyncMock(return_value=[])
        await store.search_nodes("Alice", "g", exclude_ids=["x"])
        sql, *params = conn.fetch.call_args[0]
        assert "similarity(" in sql
        assert params[2] == ["x"]
        assert params[4] == "Alice"

    @pytest.mark.anyio
    async def test_search_edges_filters_endpoints(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetch = AsyncMock(return_value=[])
        await store.search_edges("fact", "g", source_id="alice")
        sql, *params = conn.fetch.call_args[0]
        assert "AND source_id = $5" in sql
        assert "expired_at IS NULL" in sql
        assert params[4] == "alice"

    @pytest.mark.anyio
    async def test_neighbors(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetch = AsyncMock(return_value=[{"other_id": "b", "edge_count": 2}])
        neighbors = await store.get_node_neighbors("a", "g")
        assert [(n.node_id, n.edge_count) for n in neighbors] == [("b", 2)]

    @pytest.mark.anyio
    async def test_community_of(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchrow = AsyncMock(return_value=_node_row(id="c1", node_type="community", embedding=None))
        community = await store.get_community_of("alice")
        assert community.type == NodeType.COMMUNITY
        assert "e.target_id = $1" in conn.fetchrow.call_args[0][0]

    @pytest.mark.anyio
    async def test_has_edge(self):
        store, conn = _make_store_with_mock_pool()
        conn.fetchval = AsyncMock(return_value=True)
        assert await store.has_edge("dup", "canon", "IS_DUPLICATE_OF") is True

    @pytest.mark.anyio
    async def test_empty_id_lists_skip_the_database(self):
        store, conn = _make_store_with_mock_pool()
        assert await store.get_nodes([]) == []
        assert await store.get_edges_for_nodes([], "g") == []
        store.pool.acquire.assert_not_called()
