"""Tests for graph data models (Node, Edge, group ids, membership direction)."""

from datetime import datetime, timezone

import numpy as np
import pytest

from graphkeeper.exceptions import MembershipDirectionError, ValidationError
from graphkeeper.graph.models import (
    HAS_MEMBER,
    MENTIONED_IN,
    Edge,
    EdgeType,
    Node,
    NodeType,
    check_membership_direction,
    ensure_utc,
    validate_group_id,
)

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestGroupIdValidation:
    @pytest.mark.parametrize("group_id", ["", "tenant-1", "Tenant_2", "abc123"])
    def test_valid_ids(self, group_id):
        validate_group_id(group_id)

    @pytest.mark.parametrize("group_id", ["has space", "semi;colon", "slash/ed", "ünicode"])
    def test_invalid_ids(self, group_id):
        with pytest.raises(ValidationError):
            validate_group_id(group_id)


class TestNode:
    def test_entity_factory(self):
        node = Node.entity("Alice", "g", entity_type="PERSON")
        assert node.type == NodeType.ENTITY
        assert node.id
        assert node.created_at.tzinfo is not None

    def test_episode_factory_defaults_valid_from(self):
        node = Node.episode("Alice joined Acme.", "g")
        assert node.type == NodeType.EPISODIC
        assert node.valid_from is not None

    def test_type_coerced_from_string(self):
        node = Node(id="n1", group_id="g", type="community")
        assert node.type == NodeType.COMMUNITY

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            Node(id="", group_id="g")

    def test_naive_datetimes_become_utc(self):
        node = Node(id="n1", group_id="g", created_at=datetime(2024, 1, 1))
        assert node.created_at == JAN_1

    def test_merge_keeps_existing_keys_and_passes_unknown(self):
        canonical = Node.entity("Alice", "g", node_id="a", attributes={"role": "engineer"})
        duplicate = Node.entity(
            "A. Smith", "g", node_id="b", attributes={"role": "manager", "city": "Prague"}
        )
        canonical.merge_from(duplicate)
        assert canonical.attributes["role"] == "engineer"
        assert canonical.attributes["city"] == "Prague"
        assert canonical.attributes["merged_from"] == ["b"]
        assert canonical.id == "a"

    def test_merge_keeps_longest_summary(self):
        canonical = Node.entity("Alice", "g", summary="Engineer")
        duplicate = Node.entity("Alice", "g", summary="Engineer at Acme since 2020")
        canonical.merge_from(duplicate)
        assert canonical.summary == "Engineer at Acme since 2020"

    def test_merge_fills_missing_embedding(self):
        canonical = Node.entity("Alice", "g")
        duplicate = Node.entity("Alice", "g", embedding=np.array([1.0, 0.0]))
        canonical.merge_from(duplicate)
        assert canonical.name_embedding is not None

    def test_merge_twice_records_id_once(self):
        canonical = Node.entity("Alice", "g", node_id="a")
        duplicate = Node.entity("Alice", "g", node_id="b")
        canonical.merge_from(duplicate)
        canonical.merge_from(duplicate)
        assert canonical.attributes["merged_from"] == ["b"]


class TestEdge:
    def test_episode_ids_deduplicated_in_order(self):
        edge = Edge.relationship("a", "b", "WORKS_AT", "a works at b", "g", episode_ids=["e1", "e2", "e1"])
        assert edge.episode_ids == ["e1", "e2"]
        assert edge.originating_episode_id == "e1"

    def test_add_episode_is_set_union(self):
        edge = Edge.relationship("a", "b", "WORKS_AT", "fact", "g", episode_ids=["e1"])
        assert edge.add_episode("e2") is True
        assert edge.add_episode("e1") is False
        assert edge.episode_ids == ["e1", "e2"]

    def test_is_current(self):
        edge = Edge.relationship("a", "b", "R", "fact", "g", valid_from=JAN_1)
        assert edge.is_current
        edge.expired_at = JAN_1
        assert not edge.is_current

    def test_copy_has_independent_containers(self):
        edge = Edge.relationship("a", "b", "R", "fact", "g", episode_ids=["e1"])
        clone = edge.copy(invalid_at=JAN_1)
        clone.episode_ids.append("e2")
        assert edge.episode_ids == ["e1"]
        assert edge.invalid_at is None

    def test_mention_points_episode_to_entity(self):
        episode = Node.episode("text", "g", valid_from=JAN_1)
        entity = Node.entity("Alice", "g")
        edge = Edge.mention(episode, entity)
        assert edge.type == EdgeType.EPISODIC
        assert edge.name == MENTIONED_IN
        assert (edge.source_id, edge.target_id) == (episode.id, entity.id)
        assert edge.valid_from == JAN_1


class TestMembershipDirection:
    def test_community_to_entity(self):
        community = Node.community("Team", "summary", "g")
        entity = Node.entity("Alice", "g")
        edge = Edge.membership(community, entity)
        assert edge.name == HAS_MEMBER
        assert edge.type == EdgeType.COMMUNITY
        assert (edge.source_id, edge.target_id) == (community.id, entity.id)

    def test_community_to_community(self):
        parent = Node.community("Org", "summary", "g")
        child = Node.community("Team", "summary", "g")
        check_membership_direction(parent, child)

    def test_inverted_direction_raises(self):
        community = Node.community("Team", "summary", "g")
        entity = Node.entity("Alice", "g")
        with pytest.raises(MembershipDirectionError):
            Edge.membership(entity, community)

    def test_episode_member_raises(self):
        community = Node.community("Team", "summary", "g")
        episode = Node.episode("text", "g")
        with pytest.raises(MembershipDirectionError):
            Edge.membership(community, episode)


def test_ensure_utc_converts_offsets():
    from datetime import timedelta

    plus_two = timezone(timedelta(hours=2))
    assert ensure_utc(datetime(2024, 1, 1, 2, tzinfo=plus_two)) == JAN_1
    assert ensure_utc(None) is None
