"""Tests for the in-process GraphStore."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from graphkeeper.exceptions import GraphStoreError, MembershipDirectionError, StorageConnectionError
from graphkeeper.graph.memory_store import InMemoryGraphStore
from graphkeeper.graph.models import IS_DUPLICATE_OF, Edge, Node, NodeType
from graphkeeper.graph.store import write_each

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _rel(source, target, fact="related", name="RELATED_TO", **kwargs):
    return Edge.relationship(source, target, name, fact, "g", valid_from=JAN_1, **kwargs)


async def _seed_entities(store, *names):
    nodes = [Node.entity(name, "g", node_id=name.lower()) for name in names]
    for node in nodes:
        await store.upsert_node(node)
    return nodes


async def _seed_edges(store, edges):
    for edge in edges:
        await store.upsert_edge(edge)


class TestWrites:
    @pytest.mark.anyio
    async def test_edge_upsert_merges_episode_ids(self, store):
        edge = _rel("a", "b", episode_ids=["e1"])
        await store.upsert_edge(edge)
        await store.upsert_edge(edge.copy(episode_ids=["e2", "e1"]))
        stored = await store.get_edge(edge.id)
        assert stored.episode_ids == ["e1", "e2"]

    @pytest.mark.anyio
    async def test_records_are_copied(self, store):
        node = Node.entity("Alice", "g", node_id="alice")
        await store.upsert_node(node)
        node.name = "changed"
        fetched = await store.get_node("alice")
        fetched.summary = "changed too"
        stored = await store.get_node("alice")
        assert stored.name == "Alice"
        assert stored.summary == ""

    @pytest.mark.anyio
    async def test_get_nodes_skips_missing(self, store):
        await _seed_entities(store, "Alice")
        nodes = await store.get_nodes(["alice", "ghost"])
        assert [n.id for n in nodes] == ["alice"]


class TestSearch:
    @pytest.mark.anyio
    async def test_search_nodes_ranks_exact_name_first(self, store):
        await _seed_entities(store, "Alice Smith", "Bob", "Alicia")
        results = await store.search_nodes("alice smith", "g")
        assert results[0].id == "alice smith"

    @pytest.mark.anyio
    async def test_search_nodes_respects_exclusions_and_merges(self, store):
        alice, bob = await _seed_entities(store, "Alice", "Bob")
        bob.attributes["merged_into"] = alice.id
        await store.upsert_node(bob)
        results = await store.search_nodes("Alice", "g", exclude_ids=[alice.id])
        assert results == []

    @pytest.mark.anyio
    async def test_search_nodes_uses_embeddings(self):
        store = InMemoryGraphStore(min_score=0.95)
        node = Node.entity("International Business Machines", "g", embedding=np.array([1.0, 0.0]))
        await store.upsert_node(node)
        assert await store.search_nodes("IBM", "g") == []
        results = await store.search_nodes("IBM", "g", embedding=np.array([1.0, 0.0]))
        assert [n.id for n in results] == [node.id]

    @pytest.mark.anyio
    async def test_search_nodes_is_group_scoped(self, store):
        await store.upsert_node(Node.entity("Alice", "other"))
        assert await store.search_nodes("Alice", "g") == []

    @pytest.mark.anyio
    async def test_search_edges_skips_expired_and_duplicate_markers(self, store):
        current = _rel("a", "b", fact="Alice works at Acme")
        expired = _rel("a", "c", fact="Alice works at Acme", expired_at=JAN_1)
        marker = _rel("a", "d", fact="Alice works at Acme", name=IS_DUPLICATE_OF)
        for edge in (current, expired, marker):
            await store.upsert_edge(edge)
        results = await store.search_edges("Alice works at Acme", "g")
        assert [e.id for e in results] == [current.id]

    @pytest.mark.anyio
    async def test_search_edges_endpoint_filters(self, store):
        ab = _rel("a", "b")
        cb = _rel("c", "b")
        await _seed_edges(store, [ab, cb])
        results = await store.search_edges("related", "g", source_id="c")
        assert [e.id for e in results] == [cb.id]


class TestStructuralQueries:
    @pytest.mark.anyio
    async def test_edges_between_either_direction(self, store):
        ab = _rel("a", "b")
        ba = _rel("b", "a")
        ac = _rel("a", "c")
        await _seed_edges(store, [ab, ba, ac])
        between = await store.get_edges_between("b", "a", "g")
        assert {e.id for e in between} == {ab.id, ba.id}

    @pytest.mark.anyio
    async def test_neighbors_count_current_relationships_only(self, store):
        await _seed_entities(store, "A", "B", "C")
        await _seed_edges(store, [
            _rel("a", "b"),
            _rel("b", "a"),
            _rel("a", "c", expired_at=JAN_1),
            _rel("a", "c", name=IS_DUPLICATE_OF),
        ])
        neighbors = await store.get_node_neighbors("a", "g")
        assert [(n.node_id, n.edge_count) for n in neighbors] == [("b", 2)]

    @pytest.mark.anyio
    async def test_neighbors_ignore_non_entities(self, store):
        await _seed_entities(store, "A")
        episode = Node.episode("text", "g", node_id="ep")
        await store.upsert_node(episode)
        await store.upsert_edge(_rel("a", "ep"))
        assert await store.get_node_neighbors("a", "g") == []

    @pytest.mark.anyio
    async def test_entity_nodes_exclude_absorbed(self, store):
        alice, bob = await _seed_entities(store, "Alice", "Bob")
        bob.attributes["merged_into"] = alice.id
        await store.upsert_node(bob)
        await store.upsert_node(Node.episode("text", "g"))
        nodes = await store.get_entity_nodes("g")
        assert [n.id for n in nodes] == ["alice"]

    @pytest.mark.anyio
    async def test_group_ids(self, store):
        await store.upsert_node(Node.entity("A", "g2"))
        await store.upsert_node(Node.entity("B", "g1"))
        assert await store.get_group_ids() == ["g1", "g2"]

    @pytest.mark.anyio
    async def test_episodes_in_range_most_recent_first(self, store):
        for days in (1, 3, 10):
            await store.upsert_node(
                Node.episode(f"day {days}", "g", valid_from=JAN_1 + timedelta(days=days), node_id=f"ep{days}")
            )
        episodes = await store.get_episodes_in_range("g", JAN_1, JAN_1 + timedelta(days=7))
        assert [e.id for e in episodes] == ["ep3", "ep1"]

    @pytest.mark.anyio
    async def test_community_of_follows_current_membership(self, store):
        entity = Node.entity("Alice", "g")
        old = Node.community("Old", "old summary", "g")
        new = Node.community("New", "new summary", "g")
        for node in (entity, old, new):
            await store.upsert_node(node)
        stale = Edge.membership(old, entity, created_at=JAN_1)
        stale.expired_at = JAN_1 + timedelta(days=1)
        await store.upsert_edge(stale)
        await store.upsert_edge(Edge.membership(new, entity, created_at=JAN_1 + timedelta(days=2)))

        community = await store.get_community_of(entity.id)
        assert community.id == new.id
        assert community.type == NodeType.COMMUNITY
        assert len(await store.get_membership_edges("g")) == 1

    @pytest.mark.anyio
    async def test_has_edge(self, store):
        await store.upsert_edge(_rel("dup", "canon", name=IS_DUPLICATE_OF))
        assert await store.has_edge("dup", "canon", IS_DUPLICATE_OF)
        assert not await store.has_edge("canon", "dup", IS_DUPLICATE_OF)


def test_sync_wrappers():
    store = InMemoryGraphStore()
    store.nodes["a"] = Node.entity("A", "g", node_id="a")
    assert store.get_node_sync("a").name == "A"
    assert [n.id for n in store.get_entity_nodes_sync("g")] == ["a"]


class TestEdgesForNodes:
    @pytest.mark.anyio
    async def test_every_current_edge_type_is_returned(self, store):
        alice, bob = await _seed_entities(store, "Alice", "Bob")
        community = Node.community("Team", "Alice and Bob", "g", node_id="c1")
        episode = Node.episode("Alice met Bob.", "g", valid_from=JAN_1, node_id="ep")
        relationship = _rel("alice", "bob")
        mention = Edge.mention(episode, alice)
        membership = Edge.membership(community, alice)
        expired = _rel("bob", "alice", expired_at=JAN_1)
        await _seed_edges(store, [relationship, mention, membership, expired])

        edges = await store.get_edges_for_nodes(["alice"], "g")
        assert {e.id for e in edges} == {relationship.id, mention.id, membership.id}


class TestWriteEach:
    @pytest.mark.anyio
    async def test_item_failures_are_collected(self):
        async def write(item):
            if item == "bad":
                raise GraphStoreError("constraint violated")

        written, errors = await write_each(write, ["ok", "bad"], "test", item_id=str)
        assert written == ["ok"]
        assert [(e.stage, e.item_id) for e in errors] == [("test", "bad")]

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "exc", [StorageConnectionError("db gone"), MembershipDirectionError("entity -> community")]
    )
    async def test_unrecoverable_failures_propagate(self, exc):
        async def write(item):
            raise exc

        with pytest.raises(type(exc)):
            await write_each(write, ["x"], "test", item_id=str)
