"""
FactResolver: relationship deduplication and temporal invalidation.

Candidate edges arrive from extraction; their endpoints are rewritten through
the batch's identity map before anything is compared. For each candidate the
related set is: current edges between the same two nodes (either direction)
plus fact-similarity matches anywhere in the group. The arbiter names
duplicates and contradictions among them:

    duplicate       -> keep the existing edge, union in the new episode ids,
                       reopen its validity if it had ended before the new fact
    contradiction   -> end the old edge at the new fact's valid_from
    neither         -> emit the candidate as a new current edge
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import ConcurrencyConfig, FactResolutionConfig
from ..exceptions import StorageConnectionError
from ..utils.async_helpers import gather_bounded
from ..utils.security import sanitize_error
from ..utils.text_helpers import normalize_fact
from .arbiter import DEFAULT_FACT_TYPE, LLMArbiter
from .embedder import GraphEmbedder
from .identity_map import IdentityMap, resolve_edge_pointers
from .models import BatchItemError, Edge, EdgeType, utc_now
from .store import GraphStore, merge_episode_ids, write_each
from .temporal import extend_validity, resolve_edge_contradictions

logger = logging.getLogger(__name__)

STAGE = "fact"


@dataclass
class FactResolution:
    """Output of one FactResolver run."""

    edges: List[Edge] = field(default_factory=list)  # new or merged current edges
    invalidated_edges: List[Edge] = field(default_factory=list)
    errors: List[BatchItemError] = field(default_factory=list)


def collapse_exact_duplicates(edges: Sequence[Edge]) -> List[Edge]:
    """
    Merge in-batch edges with the same endpoints, name and fact text.

    The first occurrence survives with the ordered union of all episode ids.
    """
    kept: Dict[Tuple[str, str, str, str], Edge] = {}
    for edge in edges:
        key = (edge.source_id, edge.target_id, edge.name, normalize_fact(edge.fact))
        first = kept.get(key)
        if first is None:
            kept[key] = edge
        else:
            first.episode_ids = merge_episode_ids(first.episode_ids, edge.episode_ids)
    return list(kept.values())


class FactResolver:
    """Resolves candidate Relationship edges against the stored graph."""

    def __init__(
        self,
        store: GraphStore,
        arbiter: LLMArbiter,
        embedder: Optional[GraphEmbedder] = None,
        config: Optional[FactResolutionConfig] = None,
        concurrency: Optional[ConcurrencyConfig] = None,
    ):
        self.store = store
        self.arbiter = arbiter
        self.embedder = embedder
        self.config = config or FactResolutionConfig()
        self.concurrency = concurrency or ConcurrencyConfig()

    async def resolve(
        self,
        edges: Sequence[Edge],
        identity_map: IdentityMap,
        group_id: str,
        context: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> FactResolution:
        """
        Resolve candidate edges.

        Args:
            edges: Candidate Relationship edges (endpoints may be stale ids)
            identity_map: Flat map returned by IdentityResolver
            group_id: Tenant partition
            context: Content of previous episodes shown to the arbiter
            now: Resolution (recording) time, defaults to the current time

        Raises:
            StorageConnectionError: If storage becomes unreachable
        """
        now = now or utc_now()
        result = FactResolution()

        candidates = [e for e in edges if e.type == EdgeType.ENTITY]
        if not candidates:
            return result

        resolve_edge_pointers(candidates, identity_map)
        candidates = collapse_exact_duplicates(candidates)
        await self._embed_missing(candidates, result)

        outcomes = await gather_bounded(
            (self._resolve_one(c, group_id, context, now, result) for c in candidates),
            self.concurrency.semaphore_limit,
        )

        resolved: Dict[str, Edge] = {}
        invalidated: Dict[str, Edge] = {}
        for edge, ended in outcomes:
            if edge.id in resolved:
                # Two candidates merged into the same stored edge
                resolved[edge.id].episode_ids = merge_episode_ids(
                    resolved[edge.id].episode_ids, edge.episode_ids
                )
            else:
                resolved[edge.id] = edge
            for old in ended:
                prior = invalidated.get(old.id)
                if prior is None or old.invalid_at < prior.invalid_at:
                    invalidated[old.id] = old

        # An edge both re-attested and contradicted in one batch ends up invalidated
        for edge_id, old in invalidated.items():
            attested = resolved.pop(edge_id, None)
            if attested is not None:
                old.episode_ids = merge_episode_ids(old.episode_ids, attested.episode_ids)

        result.edges = list(resolved.values())
        result.invalidated_edges = list(invalidated.values())
        logger.info(
            f"Fact resolution: {len(candidates)} candidates -> {len(result.edges)} edges, "
            f"{len(result.invalidated_edges)} invalidated, {len(result.errors)} warnings"
        )
        return result

    async def _embed_missing(self, candidates: List[Edge], result: FactResolution) -> None:
        missing = [c for c in candidates if c.fact_embedding is None and c.fact]
        if not missing or self.embedder is None:
            return
        try:
            vectors = await self.embedder.embed_many([c.fact for c in missing])
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Fact embedding failed, searching by text only: {e}", exc_info=True)
            result.errors.append(BatchItemError(STAGE, "embeddings", sanitize_error(e)))
            return
        for edge, vec in zip(missing, vectors):
            edge.fact_embedding = vec

    async def _related(self, candidate: Edge, group_id: str, result: FactResolution) -> List[Edge]:
        """Current edges between the endpoints plus similar facts, de-duplicated."""
        related: List[Edge] = []
        try:
            related.extend(
                await self.store.get_edges_between(candidate.source_id, candidate.target_id, group_id)
            )
            related.extend(
                await self.store.search_edges(
                    candidate.fact,
                    group_id,
                    embedding=candidate.fact_embedding,
                    limit=self.config.search_limit,
                    exclude_ids=[candidate.id],
                )
            )
        except StorageConnectionError:
            raise
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Related-edge lookup failed for {candidate.id}: {e}", exc_info=True)
            result.errors.append(BatchItemError(STAGE, candidate.id, sanitize_error(e)))

        seen = set()
        unique = []
        for edge in related:
            if edge.id == candidate.id or edge.id in seen or not edge.is_current:
                continue
            seen.add(edge.id)
            unique.append(edge)
        return unique

    async def _resolve_one(
        self,
        candidate: Edge,
        group_id: str,
        context: Sequence[str],
        now: datetime,
        result: FactResolution,
    ) -> Tuple[Edge, List[Edge]]:
        related = await self._related(candidate, group_id, result)
        if not related:
            return candidate, []

        try:
            verdict = await self.arbiter.decide_edge(candidate, related, context)
        except (KeyboardInterrupt, SystemExit, MemoryError):
            raise
        except Exception as e:
            logger.warning(f"Arbitration failed for edge {candidate.id}, emitting as new: {e}")
            result.errors.append(BatchItemError(STAGE, candidate.id, sanitize_error(e)))
            return candidate, []

        duplicates = [related[i] for i in verdict.duplicate_facts if 0 <= i < len(related)]
        duplicate_ids = {d.id for d in duplicates}
        contradicted = [
            related[i]
            for i in verdict.contradicted_facts
            if 0 <= i < len(related) and related[i].id not in duplicate_ids
        ]

        if duplicates:
            resolved = duplicates[0].copy()
            for episode_id in candidate.episode_ids:
                resolved.add_episode(episode_id)
            if extend_validity(resolved, candidate):
                logger.debug(f"Edge {resolved.id} validity reopened by {candidate.id}")
        else:
            resolved = candidate
            if verdict.fact_type != DEFAULT_FACT_TYPE:
                resolved.name = verdict.fact_type

        ended = resolve_edge_contradictions(resolved, contradicted, now=now)
        return resolved, ended

    async def persist(self, resolution: FactResolution) -> List[BatchItemError]:
        """Early write of resolved and invalidated edges."""
        _, errors = await write_each(
            self.store.upsert_edge, resolution.edges + resolution.invalidated_edges, STAGE
        )
        return errors
