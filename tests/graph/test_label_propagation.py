"""Tests for cluster projection and label propagation."""

import logging

import pytest

from graphkeeper.graph.label_propagation import build_projection, label_propagation
from graphkeeper.graph.models import Edge, Neighbor, Node


def _projection(weights):
    """Symmetric projection from {(a, b): count}; nodes listed in a pair are included."""
    projection = {}
    for (a, b), count in weights.items():
        projection.setdefault(a, []).append(Neighbor(b, count))
        projection.setdefault(b, []).append(Neighbor(a, count))
    return projection


class TestLabelPropagation:
    def test_double_edges_converge_to_one_cluster(self):
        # A-B and B-C weight 2, no A-C edge
        projection = _projection({("A", "B"): 2, ("B", "C"): 2})
        assert label_propagation(projection, max_iterations=100) == [["A", "B", "C"]]

    def test_single_edge_pair_merges_by_max_rule(self):
        assert label_propagation(_projection({("A", "B"): 1})) == [["A", "B"]]

    def test_chain_of_single_edges(self):
        projection = _projection({("A", "B"): 1, ("B", "C"): 1})
        assert label_propagation(projection) == [["A", "B", "C"]]

    def test_isolated_nodes_are_not_clusters(self):
        projection = _projection({("A", "B"): 1})
        projection["Z"] = []
        assert label_propagation(projection) == [["A", "B"]]

    def test_separate_components_sorted_by_first_member(self):
        projection = _projection({("D", "C"): 1, ("B", "A"): 1})
        assert label_propagation(projection) == [["A", "B"], ["C", "D"]]

    def test_empty_projection(self):
        assert label_propagation({}) == []

    def test_iteration_cap_terminates(self, caplog):
        projection = _projection({("A", "B"): 2, ("B", "C"): 2})
        with caplog.at_level(logging.WARNING):
            clusters = label_propagation(projection, max_iterations=1)
        assert all(len(c) >= 2 for c in clusters)
        assert "iteration cap" in caplog.text

    def test_min_cluster_size(self):
        projection = _projection({("A", "B"): 1, ("C", "D"): 1, ("D", "E"): 1})
        assert label_propagation(projection, min_cluster_size=3) == [["C", "D", "E"]]

    def test_deterministic(self):
        projection = _projection({("A", "B"): 2, ("B", "C"): 1, ("C", "D"): 3, ("E", "A"): 1})
        assert label_propagation(projection) == label_propagation(projection)


class TestBuildProjection:
    @pytest.mark.anyio
    async def test_counts_edges_and_keeps_isolated_entities(self, store):
        for name in ("Alice", "Bob", "Carol"):
            await store.upsert_node(Node.entity(name, "g", node_id=name.lower()))
        await store.upsert_edge(Edge.relationship("alice", "bob", "KNOWS", "Alice knows Bob", "g"))
        await store.upsert_edge(Edge.relationship("bob", "alice", "MANAGES", "Bob manages Alice", "g"))

        projection = await build_projection(store, "g")
        assert sorted(projection) == ["alice", "bob", "carol"]
        assert [(n.node_id, n.edge_count) for n in projection["alice"]] == [("bob", 2)]
        assert projection["carol"] == []

    @pytest.mark.anyio
    async def test_expired_edges_ignored(self, store):
        for name in ("Alice", "Bob"):
            await store.upsert_node(Node.entity(name, "g", node_id=name.lower()))
        edge = Edge.relationship("alice", "bob", "KNOWS", "Alice knows Bob", "g")
        edge.expired_at = edge.valid_from
        await store.upsert_edge(edge)

        projection = await build_projection(store, "g")
        assert projection == {"alice": [], "bob": []}
