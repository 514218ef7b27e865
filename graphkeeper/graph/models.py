"""
Data models for the temporally-versioned knowledge graph.

Three node kinds share one Node record (entity, episode, community) and three
edge kinds share one Edge record:

    Relationship (EdgeType.ENTITY)     entity -> entity, carries a fact + bitemporal window
    Mention      (EdgeType.EPISODIC)   episode -> entity (MENTIONED_IN)
    Membership   (EdgeType.COMMUNITY)  community -> entity | community (HAS_MEMBER)

Node ids never change. Merging two entities removes one id from future use
via the identity map; the survivor keeps its own id.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from ..exceptions import MembershipDirectionError, ValidationError

MENTIONED_IN = "MENTIONED_IN"
HAS_MEMBER = "HAS_MEMBER"
IS_DUPLICATE_OF = "IS_DUPLICATE_OF"

_GROUP_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


class NodeType(str, Enum):
    """Kinds of graph nodes."""

    ENTITY = "entity"
    EPISODIC = "episodic"
    COMMUNITY = "community"


class EdgeType(str, Enum):
    """Kinds of graph edges."""

    ENTITY = "entity"  # Relationship ("fact")
    EPISODIC = "episodic"  # Mention
    COMMUNITY = "community"  # Membership


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def validate_group_id(group_id: str) -> None:
    """
    Validate a tenant/group id.

    Empty is allowed (default group). Otherwise only ASCII letters, digits,
    dashes and underscores.

    Raises:
        ValidationError: If the id contains other characters
    """
    if group_id == "":
        return
    if not isinstance(group_id, str) or not _GROUP_ID_RE.match(group_id):
        raise ValidationError(
            f"Invalid group_id '{group_id}': only letters, digits, '-' and '_' are allowed",
            details={"group_id": group_id},
        )


@dataclass(frozen=True)
class Neighbor:
    """One entry of the cluster projection: a neighbor and its Relationship edge count."""

    node_id: str
    edge_count: int


@dataclass
class Node:
    """
    Entity, episode or community node.

    Entity fields: name, summary, entity_type, embedding (over name), attributes.
    Episode fields: content, valid_from (real-world occurrence time).
    Community fields: name, summary, embedding (name embedding).

    `attributes` is an open key/value map; merges keep unknown keys untouched.
    """

    id: str
    group_id: str
    type: NodeType = NodeType.ENTITY
    name: str = ""
    summary: str = ""
    entity_type: str = ""
    content: str = ""
    valid_from: Optional[datetime] = None
    embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    attributes: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            raise ValidationError("Node id must not be empty")
        if isinstance(self.type, str) and not isinstance(self.type, NodeType):
            self.type = NodeType(self.type)
        self.created_at = ensure_utc(self.created_at)
        self.valid_from = ensure_utc(self.valid_from)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def name_embedding(self) -> Optional[np.ndarray]:
        """Community naming convention for `embedding`."""
        return self.embedding

    @classmethod
    def entity(
        cls,
        name: str,
        group_id: str,
        entity_type: str = "",
        summary: str = "",
        node_id: Optional[str] = None,
        **kwargs,
    ) -> "Node":
        return cls(
            id=node_id or new_id(),
            group_id=group_id,
            type=NodeType.ENTITY,
            name=name,
            entity_type=entity_type,
            summary=summary,
            **kwargs,
        )

    @classmethod
    def episode(
        cls,
        content: str,
        group_id: str,
        valid_from: Optional[datetime] = None,
        name: str = "",
        node_id: Optional[str] = None,
        **kwargs,
    ) -> "Node":
        return cls(
            id=node_id or new_id(),
            group_id=group_id,
            type=NodeType.EPISODIC,
            name=name,
            content=content,
            valid_from=valid_from or utc_now(),
            **kwargs,
        )

    @classmethod
    def community(cls, name: str, summary: str, group_id: str, **kwargs) -> "Node":
        return cls(
            id=kwargs.pop("node_id", None) or new_id(),
            group_id=group_id,
            type=NodeType.COMMUNITY,
            name=name,
            summary=summary,
            **kwargs,
        )

    def merge_from(self, other: "Node") -> None:
        """
        Absorb a duplicate's descriptive fields without touching identity.

        Existing attribute keys win; keys only the duplicate has pass through.
        The longer summary is kept. The duplicate's id is recorded under
        attributes["merged_from"].
        """
        for key, value in other.attributes.items():
            if key not in self.attributes:
                self.attributes[key] = value
        if len(other.summary or "") > len(self.summary or ""):
            self.summary = other.summary
        if not self.entity_type and other.entity_type:
            self.entity_type = other.entity_type
        if self.embedding is None and other.embedding is not None:
            self.embedding = other.embedding
        merged = list(self.attributes.get("merged_from", []))
        if other.id not in merged and other.id != self.id:
            merged.append(other.id)
            self.attributes["merged_from"] = merged
        self.updated_at = utc_now()


@dataclass
class Edge:
    """
    Relationship, Mention or Membership edge.

    Temporal fields (Relationship):
        valid_from  when the fact became true (valid time)
        invalid_at  when the fact stopped being true, or None
        expired_at  when the record was superseded (recording time), or None

    Invariant: valid_from <= invalid_at <= expired_at when set.
    `episode_ids` is ordered and duplicate-free; the first entry is the
    originating episode.
    """

    id: str
    source_id: str
    target_id: str
    group_id: str
    type: EdgeType = EdgeType.ENTITY
    name: str = ""
    fact: str = ""
    fact_embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)
    episode_ids: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    valid_from: datetime = field(default_factory=utc_now)
    invalid_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            raise ValidationError("Edge id must not be empty")
        if isinstance(self.type, str) and not isinstance(self.type, EdgeType):
            self.type = EdgeType(self.type)
        self.valid_from = ensure_utc(self.valid_from)
        self.invalid_at = ensure_utc(self.invalid_at)
        self.expired_at = ensure_utc(self.expired_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        # Preserve order, drop repeats
        self.episode_ids = list(dict.fromkeys(self.episode_ids))

    @property
    def is_current(self) -> bool:
        """Current-state reads exclude expired edges."""
        return self.expired_at is None

    @property
    def originating_episode_id(self) -> Optional[str]:
        return self.episode_ids[0] if self.episode_ids else None

    def add_episode(self, episode_id: str) -> bool:
        """Append an attesting episode (set-union semantics). Returns True if it was new."""
        if not episode_id or episode_id in self.episode_ids:
            return False
        self.episode_ids.append(episode_id)
        self.updated_at = utc_now()
        return True

    def copy(self, **changes) -> "Edge":
        """Shallow copy with independent episode/attribute containers."""
        changes.setdefault("episode_ids", list(self.episode_ids))
        changes.setdefault("attributes", dict(self.attributes))
        return replace(self, **changes)

    @classmethod
    def relationship(
        cls,
        source_id: str,
        target_id: str,
        name: str,
        fact: str,
        group_id: str,
        valid_from: Optional[datetime] = None,
        episode_ids: Optional[List[str]] = None,
        edge_id: Optional[str] = None,
        **kwargs,
    ) -> "Edge":
        return cls(
            id=edge_id or new_id(),
            source_id=source_id,
            target_id=target_id,
            group_id=group_id,
            type=EdgeType.ENTITY,
            name=name,
            fact=fact,
            valid_from=valid_from or utc_now(),
            episode_ids=list(episode_ids or []),
            **kwargs,
        )

    @classmethod
    def mention(cls, episode: Node, entity: Node, created_at: Optional[datetime] = None) -> "Edge":
        """MENTIONED_IN edge, episode -> entity."""
        now = created_at or utc_now()
        return cls(
            id=new_id(),
            source_id=episode.id,
            target_id=entity.id,
            group_id=episode.group_id,
            type=EdgeType.EPISODIC,
            name=MENTIONED_IN,
            episode_ids=[episode.id],
            valid_from=episode.valid_from or now,
            created_at=now,
        )

    @classmethod
    def membership(cls, community: Node, member: Node, created_at: Optional[datetime] = None) -> "Edge":
        """
        HAS_MEMBER edge, community -> member.

        Raises:
            MembershipDirectionError: If the source is not a community or the
                target is neither an entity nor a community
        """
        check_membership_direction(community, member)
        now = created_at or utc_now()
        return cls(
            id=new_id(),
            source_id=community.id,
            target_id=member.id,
            group_id=community.group_id,
            type=EdgeType.COMMUNITY,
            name=HAS_MEMBER,
            valid_from=now,
            created_at=now,
        )


def check_membership_direction(source: Node, target: Node) -> None:
    """Membership must point community -> entity/community, never the reverse."""
    if source.type != NodeType.COMMUNITY:
        raise MembershipDirectionError(
            f"Membership source {source.id} is a {source.type.value} node, expected community",
            details={"source_id": source.id, "target_id": target.id},
        )
    if target.type not in (NodeType.ENTITY, NodeType.COMMUNITY):
        raise MembershipDirectionError(
            f"Membership target {target.id} is a {target.type.value} node",
            details={"source_id": source.id, "target_id": target.id},
        )


@dataclass(frozen=True)
class BatchItemError:
    """Non-fatal failure of one item in one pipeline stage."""

    stage: str
    item_id: str
    message: str
