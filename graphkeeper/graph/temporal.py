"""
Bitemporal edge helpers.

Valid time (valid_from / invalid_at) says when a fact was true in the world;
recording time (created_at / expired_at) says when the graph believed it.
A contradicting fact ends the old one at the new fact's valid_from, never at
the wall-clock time of resolution.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from ..exceptions import TemporalInvariantError
from .models import Edge, ensure_utc, utc_now

logger = logging.getLogger(__name__)


def validate_edge_temporal_consistency(edge: Edge) -> None:
    """
    Enforce valid_from <= invalid_at <= expired_at for the fields that are set.

    Raises:
        TemporalInvariantError: If the edge's temporal fields are out of order
    """
    if edge.invalid_at is not None and edge.valid_from > edge.invalid_at:
        raise TemporalInvariantError(
            f"Edge {edge.id}: valid_from {edge.valid_from.isoformat()} is after "
            f"invalid_at {edge.invalid_at.isoformat()}",
            details={"edge_id": edge.id},
        )
    if (
        edge.invalid_at is not None
        and edge.expired_at is not None
        and edge.invalid_at > edge.expired_at
    ):
        raise TemporalInvariantError(
            f"Edge {edge.id}: invalid_at {edge.invalid_at.isoformat()} is after "
            f"expired_at {edge.expired_at.isoformat()}",
            details={"edge_id": edge.id},
        )


def resolve_edge_contradictions(
    new_edge: Edge,
    contradicted: Sequence[Edge],
    now: Optional[datetime] = None,
) -> List[Edge]:
    """
    Invalidate edges contradicted by `new_edge`.

    An edge is left alone when its validity already ended at or before the new
    fact began, or when the new fact ended at or before the edge began. Every
    other edge gets invalid_at = max(new.valid_from, edge.valid_from) and
    expired_at = max(now, invalid_at).

    Returns copies; the inputs are not modified.
    """
    now = ensure_utc(now) or utc_now()
    invalidated: List[Edge] = []

    for edge in contradicted:
        if edge.invalid_at is not None and edge.invalid_at <= new_edge.valid_from:
            continue
        if new_edge.invalid_at is not None and new_edge.invalid_at <= edge.valid_from:
            continue

        invalid_at = max(new_edge.valid_from, edge.valid_from)
        expired_at = max(now, invalid_at)
        updated = edge.copy(invalid_at=invalid_at, expired_at=expired_at, updated_at=now)
        validate_edge_temporal_consistency(updated)
        invalidated.append(updated)
        logger.debug(
            f"Edge {edge.id} invalidated at {invalid_at.isoformat()} by {new_edge.id}"
        )

    return invalidated


def extend_validity(existing: Edge, candidate: Edge) -> bool:
    """
    Reopen an ended fact that a later episode attests again.

    If the existing edge ended before the candidate's valid_from, its
    invalid_at becomes the candidate's invalid_at. Returns True if changed.
    """
    if existing.invalid_at is None or existing.invalid_at >= candidate.valid_from:
        return False
    existing.invalid_at = candidate.invalid_at
    if existing.expired_at is not None and (
        existing.invalid_at is None or existing.invalid_at > existing.expired_at
    ):
        existing.expired_at = None
    existing.updated_at = utc_now()
    return True


def get_active_edges_at_time(edges: Sequence[Edge], at: datetime) -> List[Edge]:
    """Edges whose validity window contains `at` and that were not expired by then."""
    at = ensure_utc(at)
    return [
        e
        for e in edges
        if e.valid_from <= at
        and (e.invalid_at is None or at < e.invalid_at)
        and (e.expired_at is None or at < e.expired_at)
    ]


def edge_lifespan(edge: Edge) -> Optional[timedelta]:
    """How long the fact was valid, or None while it is still open."""
    if edge.invalid_at is None:
        return None
    return edge.invalid_at - edge.valid_from
