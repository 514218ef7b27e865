"""
Identity map construction and application.

Duplicate pairs (candidate_id, duplicate_id) are collapsed with an index-based
union-find (path halving + union by size). Each connected component gets one
canonical id, chosen by the caller's sort key so repeated runs over the same
inputs pick the same survivor. The resulting map is flat: every id maps in
one step to a root that maps to itself.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..exceptions import IdentityMapError
from .models import Edge

logger = logging.getLogger(__name__)

IdentityMap = Dict[str, str]


class UnionFind:
    """Disjoint-set over string ids backed by parent/size arrays."""

    def __init__(self, ids: Iterable[str] = ()):
        self._index: Dict[str, int] = {}
        self._ids: List[str] = []
        self._parent: List[int] = []
        self._size: List[int] = []
        for node_id in ids:
            self.add(node_id)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    def add(self, node_id: str) -> int:
        idx = self._index.get(node_id)
        if idx is not None:
            return idx
        idx = len(self._ids)
        self._index[node_id] = idx
        self._ids.append(node_id)
        self._parent.append(idx)
        self._size.append(1)
        return idx

    def _find(self, idx: int) -> int:
        parent = self._parent
        while parent[idx] != idx:
            parent[idx] = parent[parent[idx]]  # path halving
            idx = parent[idx]
        return idx

    def find(self, node_id: str) -> str:
        return self._ids[self._find(self.add(node_id))]

    def union(self, a: str, b: str) -> bool:
        """Merge the sets holding a and b. Returns False if already joined."""
        ra, rb = self._find(self.add(a)), self._find(self.add(b))
        if ra == rb:
            return False
        if self._size[ra] < self._size[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        self._size[ra] += self._size[rb]
        return True

    def components(self) -> List[List[str]]:
        """Connected components in first-seen order of their members."""
        groups: Dict[int, List[str]] = {}
        for idx, node_id in enumerate(self._ids):
            groups.setdefault(self._find(idx), []).append(node_id)
        return list(groups.values())


def build_identity_map(
    ids: Iterable[str],
    duplicate_pairs: Iterable[Tuple[str, str]],
    sort_key: Optional[Callable[[str], Any]] = None,
) -> IdentityMap:
    """
    Collapse duplicate pairs into a flat identity map.

    Args:
        ids: Every id the map must cover (candidates map to themselves when
            they have no duplicate)
        duplicate_pairs: (a, b) pairs judged to be the same entity; ids not in
            `ids` are added automatically
        sort_key: Orders a component's members; the smallest becomes the
            canonical id. Defaults to the id itself.

    Returns:
        Dict mapping every id to its canonical id.
    """
    key = sort_key or (lambda node_id: node_id)
    uf = UnionFind(ids)
    for a, b in duplicate_pairs:
        if a and b and a != b:
            uf.union(a, b)

    identity_map: IdentityMap = {}
    for members in uf.components():
        canonical = min(members, key=lambda m: (key(m), m))
        for member in members:
            identity_map[member] = canonical

    merged = sum(1 for k, v in identity_map.items() if k != v)
    if merged:
        logger.debug(f"Identity map: {merged} ids folded into {len(set(identity_map.values()))} roots")
    return identity_map


def compress_identity_map(mapping: Dict[str, str]) -> IdentityMap:
    """
    Path-compress an arbitrary old->new mapping (e.g. chained across batches).

    Targets missing from the mapping are treated as roots.

    Raises:
        IdentityMapError: If the mapping contains a cycle (a -> b -> a)
    """
    compressed: IdentityMap = {}
    for start in mapping:
        if start in compressed:
            continue
        path = [start]
        seen = {start}
        current = start
        while True:
            if current in compressed:
                root = compressed[current]
                break
            nxt = mapping.get(current, current)
            if nxt == current:
                root = current
                break
            if nxt in seen:
                raise IdentityMapError(
                    f"Cycle in identity map through '{nxt}'",
                    details={"path": path + [nxt]},
                )
            seen.add(nxt)
            path.append(nxt)
            current = nxt
        for node_id in path:
            compressed[node_id] = root
    for root in set(compressed.values()):
        compressed.setdefault(root, root)
    return compressed


def verify_identity_map(identity_map: Dict[str, str]) -> None:
    """
    Check that one lookup reaches a self-mapped root.

    Raises:
        IdentityMapError: If some id maps to a non-root
    """
    for node_id, target in identity_map.items():
        if identity_map.get(target, target) != target:
            raise IdentityMapError(
                f"Identity map not compressed: '{node_id}' -> '{target}' -> '{identity_map[target]}'",
                details={"node_id": node_id, "target": target},
            )


def apply_identity_map(identity_map: Dict[str, str], node_id: str) -> str:
    return identity_map.get(node_id, node_id)


def resolve_edge_pointers(edges: Sequence[Edge], identity_map: Dict[str, str]) -> List[Edge]:
    """
    Rewrite edge endpoints through the identity map.

    Edges are updated in place; canonical endpoints are left untouched.
    Returns the same list for chaining.
    """
    for edge in edges:
        edge.source_id = identity_map.get(edge.source_id, edge.source_id)
        edge.target_id = identity_map.get(edge.target_id, edge.target_id)
    return list(edges)
