"""
Cluster projection and label propagation.

Each entity starts in its own community (indices assigned in sorted-id order).
Every iteration computes the next assignment from a snapshot of the previous
one: tally neighbor edge counts per neighbor community, then

    top weight > 1   -> adopt the top community
    otherwise        -> keep max(top community, current community)

Ties in weight go to the higher community index. The loop stops when nothing
changes or after `max_iterations`.

Synchronous updates can swap labels forever between two states (any pair of
entities joined by two or more edges does this). When an assignment repeats
the one from two iterations earlier, nodes that keep trading labels with a
neighbor are collapsed into one community and propagation stops.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Mapping, Optional, Sequence

from .identity_map import UnionFind
from .models import Neighbor
from .store import GraphStore

logger = logging.getLogger(__name__)

Projection = Mapping[str, Sequence[Neighbor]]


async def build_projection(store: GraphStore, group_id: str) -> Dict[str, List[Neighbor]]:
    """Weighted adjacency of every entity in a group (entities without edges included)."""
    projection: Dict[str, List[Neighbor]] = {}
    for node in await store.get_entity_nodes(group_id):
        projection[node.id] = await store.get_node_neighbors(node.id, group_id)
    return projection


def _next_assignment(projection: Projection, communities: Dict[str, int]) -> Dict[str, int]:
    next_map: Dict[str, int] = {}
    for node_id, neighbors in projection.items():
        current = communities[node_id]
        tally: Dict[int, int] = defaultdict(int)
        for neighbor in neighbors:
            community = communities.get(neighbor.node_id)
            if community is not None:
                tally[community] += neighbor.edge_count

        if not tally:
            next_map[node_id] = current
            continue

        top_count, top_community = max((count, community) for community, count in tally.items())
        if top_count > 1:
            next_map[node_id] = top_community
        else:
            next_map[node_id] = max(top_community, current)
    return next_map


def _collapse_oscillation(
    projection: Projection, current: Dict[str, int], following: Dict[str, int]
) -> Dict[str, int]:
    """Merge nodes that adopt a neighbor's label while the assignment cycles."""
    uf = UnionFind(sorted(projection))
    by_label: Dict[int, str] = {}
    for node_id in sorted(current):
        first = by_label.setdefault(current[node_id], node_id)
        uf.union(first, node_id)
    for node_id, neighbors in projection.items():
        if following[node_id] == current[node_id]:
            continue
        for neighbor in neighbors:
            if current.get(neighbor.node_id) == following[node_id]:
                uf.union(node_id, neighbor.node_id)

    collapsed: Dict[str, int] = {}
    for members in uf.components():
        label = max(current[m] for m in members)
        for member in members:
            collapsed[member] = label
    return collapsed


def label_propagation(
    projection: Projection,
    max_iterations: int = 100,
    min_cluster_size: int = 2,
) -> List[List[str]]:
    """
    Cluster a projection.

    Returns:
        Clusters with at least `min_cluster_size` members, each sorted by id,
        ordered by their first member.
    """
    if not projection:
        return []

    communities = {node_id: idx for idx, node_id in enumerate(sorted(projection))}
    previous: Optional[Dict[str, int]] = None
    iterations = 0

    while iterations < max_iterations:
        iterations += 1
        next_map = _next_assignment(projection, communities)
        if next_map == communities:
            break
        if next_map == previous:
            communities = _collapse_oscillation(projection, communities, next_map)
            logger.debug(f"Label propagation oscillation collapsed after {iterations} iterations")
            break
        previous, communities = communities, next_map
    else:
        logger.warning(f"Label propagation hit the iteration cap ({max_iterations})")

    groups: Dict[int, List[str]] = defaultdict(list)
    for node_id, community in communities.items():
        groups[community].append(node_id)

    clusters = [sorted(members) for members in groups.values() if len(members) >= min_cluster_size]
    clusters.sort(key=lambda members: members[0])
    logger.debug(
        f"Label propagation: {len(projection)} nodes -> {len(clusters)} clusters "
        f"in {iterations} iterations"
    )
    return clusters
