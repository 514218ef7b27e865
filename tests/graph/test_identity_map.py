"""Tests for union-find and identity map construction."""

import pytest

from graphkeeper.exceptions import IdentityMapError
from graphkeeper.graph.identity_map import (
    UnionFind,
    apply_identity_map,
    build_identity_map,
    compress_identity_map,
    resolve_edge_pointers,
    verify_identity_map,
)
from graphkeeper.graph.models import Edge


def _assert_flat(identity_map):
    for node_id, target in identity_map.items():
        assert identity_map[target] == target, f"{node_id} -> {target} is not a root"


class TestUnionFind:
    def test_singletons(self):
        uf = UnionFind(["a", "b"])
        assert uf.find("a") == "a"
        assert len(uf) == 2
        assert "a" in uf and "z" not in uf

    def test_union_joins_sets(self):
        uf = UnionFind(["a", "b", "c"])
        assert uf.union("a", "b") is True
        assert uf.union("b", "a") is False
        assert uf.find("a") == uf.find("b")
        assert uf.find("c") != uf.find("a")

    def test_unknown_ids_added_on_union(self):
        uf = UnionFind()
        uf.union("x", "y")
        assert len(uf) == 2

    def test_components(self):
        uf = UnionFind(["a", "b", "c", "d"])
        uf.union("a", "c")
        uf.union("d", "c")
        assert sorted(sorted(c) for c in uf.components()) == [["a", "c", "d"], ["b"]]

    def test_long_chain(self):
        ids = [f"n{i:04d}" for i in range(2000)]
        uf = UnionFind(ids)
        for a, b in zip(ids, ids[1:]):
            uf.union(a, b)
        assert len({uf.find(i) for i in ids}) == 1


class TestBuildIdentityMap:
    def test_covers_every_id(self):
        identity_map = build_identity_map(["a", "b", "c"], [])
        assert identity_map == {"a": "a", "b": "b", "c": "c"}

    def test_canonical_is_smallest_key(self):
        order = {"a": 3, "b": 1, "c": 2}
        identity_map = build_identity_map(["a", "b", "c"], [("a", "c"), ("c", "b")], sort_key=order.get)
        assert set(identity_map.values()) == {"b"}

    def test_ties_broken_by_id(self):
        identity_map = build_identity_map(["y", "x"], [("y", "x")], sort_key=lambda _: 0)
        assert identity_map == {"x": "x", "y": "x"}

    def test_transitive_pairs_are_flat(self):
        pairs = [("a", "b"), ("b", "c"), ("c", "d"), ("e", "f")]
        identity_map = build_identity_map(["a", "b", "c", "d", "e", "f"], pairs)
        _assert_flat(identity_map)
        assert identity_map["d"] == "a"
        assert identity_map["f"] == "e"
        verify_identity_map(identity_map)

    def test_pair_ids_outside_candidates_are_covered(self):
        identity_map = build_identity_map(["new"], [("new", "stored")])
        assert identity_map["stored"] == identity_map["new"]

    def test_self_pairs_ignored(self):
        assert build_identity_map(["a"], [("a", "a")]) == {"a": "a"}


class TestCompressIdentityMap:
    def test_chain_is_compressed(self):
        compressed = compress_identity_map({"a": "b", "b": "c", "c": "d"})
        assert compressed == {"a": "d", "b": "d", "c": "d", "d": "d"}

    def test_cycle_raises(self):
        with pytest.raises(IdentityMapError):
            compress_identity_map({"a": "b", "b": "c", "c": "a"})

    def test_self_mapped_roots_kept(self):
        assert compress_identity_map({"a": "a", "b": "a"}) == {"a": "a", "b": "a"}


class TestVerifyIdentityMap:
    def test_unflattened_map_raises(self):
        with pytest.raises(IdentityMapError):
            verify_identity_map({"a": "b", "b": "c", "c": "c"})

    def test_flat_map_passes(self):
        verify_identity_map({"a": "c", "b": "c", "c": "c"})


class TestResolveEdgePointers:
    def test_rewrites_absorbed_endpoints(self):
        edge = Edge.relationship("dup", "other", "R", "fact", "g")
        resolve_edge_pointers([edge], {"dup": "canon", "canon": "canon"})
        assert edge.source_id == "canon"
        assert edge.target_id == "other"

    def test_noop_on_canonical_ids(self):
        edge = Edge.relationship("canon", "other", "R", "fact", "g")
        resolve_edge_pointers([edge], {"dup": "canon", "canon": "canon"})
        assert (edge.source_id, edge.target_id) == ("canon", "other")

    def test_apply_identity_map(self):
        assert apply_identity_map({"a": "b"}, "a") == "b"
        assert apply_identity_map({"a": "b"}, "z") == "z"
