"""Tests for bitemporal edge helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from graphkeeper.exceptions import TemporalInvariantError
from graphkeeper.graph.models import Edge
from graphkeeper.graph.temporal import (
    edge_lifespan,
    extend_validity,
    get_active_edges_at_time,
    resolve_edge_contradictions,
    validate_edge_temporal_consistency,
)

JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
MAR_1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
JUN_1 = datetime(2024, 6, 1, tzinfo=timezone.utc)
NOW = datetime(2024, 7, 1, tzinfo=timezone.utc)


def _make_edge(valid_from, invalid_at=None, expired_at=None, fact="Alice works at Acme"):
    return Edge.relationship(
        "alice", "acme", "WORKS_AT", fact, "g",
        valid_from=valid_from, invalid_at=invalid_at, expired_at=expired_at,
    )


class TestValidation:
    def test_open_edge_is_valid(self):
        validate_edge_temporal_consistency(_make_edge(JAN_1))

    def test_valid_from_after_invalid_at(self):
        with pytest.raises(TemporalInvariantError):
            validate_edge_temporal_consistency(_make_edge(JUN_1, invalid_at=JAN_1))

    def test_invalid_at_after_expired_at(self):
        with pytest.raises(TemporalInvariantError):
            validate_edge_temporal_consistency(_make_edge(JAN_1, invalid_at=JUN_1, expired_at=MAR_1))

    def test_equal_bounds_allowed(self):
        validate_edge_temporal_consistency(_make_edge(JAN_1, invalid_at=JAN_1, expired_at=JAN_1))


class TestResolveContradictions:
    def test_old_edge_ends_at_new_valid_from(self):
        old = _make_edge(JAN_1)
        new = _make_edge(JUN_1, fact="Alice works at Globex")
        [ended] = resolve_edge_contradictions(new, [old], now=NOW)
        assert ended.invalid_at == JUN_1
        assert ended.expired_at == NOW
        assert ended.id == old.id

    def test_inputs_are_not_modified(self):
        old = _make_edge(JAN_1)
        resolve_edge_contradictions(_make_edge(JUN_1), [old], now=NOW)
        assert old.invalid_at is None
        assert old.expired_at is None

    def test_edge_already_ended_is_skipped(self):
        old = _make_edge(JAN_1, invalid_at=MAR_1)
        assert resolve_edge_contradictions(_make_edge(JUN_1), [old], now=NOW) == []

    def test_new_fact_ended_before_old_began_is_skipped(self):
        old = _make_edge(JUN_1)
        new = _make_edge(JAN_1, invalid_at=MAR_1)
        assert resolve_edge_contradictions(new, [old], now=NOW) == []

    def test_predating_contradiction_keeps_invariant(self):
        old = _make_edge(JUN_1)
        new = _make_edge(JAN_1)
        [ended] = resolve_edge_contradictions(new, [old], now=NOW)
        assert ended.invalid_at == JUN_1
        assert ended.valid_from <= ended.invalid_at <= ended.expired_at

    def test_future_valid_time_expires_no_earlier_than_invalid_at(self):
        future = NOW + timedelta(days=30)
        old = _make_edge(JAN_1)
        [ended] = resolve_edge_contradictions(_make_edge(future), [old], now=NOW)
        assert ended.invalid_at == future
        assert ended.expired_at == future


class TestExtendValidity:
    def test_reopens_ended_fact(self):
        existing = _make_edge(JAN_1, invalid_at=MAR_1)
        candidate = _make_edge(JUN_1)
        assert extend_validity(existing, candidate) is True
        assert existing.invalid_at is None

    def test_clears_expiry_that_would_break_invariant(self):
        existing = _make_edge(JAN_1, invalid_at=MAR_1, expired_at=MAR_1)
        candidate = _make_edge(JUN_1, invalid_at=NOW)
        extend_validity(existing, candidate)
        assert existing.invalid_at == NOW
        assert existing.expired_at is None
        validate_edge_temporal_consistency(existing)

    def test_open_fact_unchanged(self):
        existing = _make_edge(JAN_1)
        assert extend_validity(existing, _make_edge(JUN_1)) is False

    def test_overlapping_fact_unchanged(self):
        existing = _make_edge(JAN_1, invalid_at=NOW)
        assert extend_validity(existing, _make_edge(JUN_1)) is False
        assert existing.invalid_at == NOW


class TestAsOfQueries:
    def test_active_edges_at_time(self):
        current = _make_edge(JAN_1)
        ended = _make_edge(JAN_1, invalid_at=MAR_1)
        future = _make_edge(NOW)
        assert get_active_edges_at_time([current, ended, future], JUN_1) == [current]
        assert get_active_edges_at_time([current, ended, future], datetime(2024, 2, 1)) == [current, ended]

    def test_expired_record_not_active(self):
        expired = _make_edge(JAN_1, expired_at=MAR_1)
        assert get_active_edges_at_time([expired], JUN_1) == []

    def test_lifespan(self):
        assert edge_lifespan(_make_edge(JAN_1)) is None
        assert edge_lifespan(_make_edge(JAN_1, invalid_at=MAR_1)) == MAR_1 - JAN_1
