"""Tests for the naive weighted Aggregation Engine."""

import pytest

from veritas_kernel.aggregation.engine import (
    AggregationEngine,
    aggregate_submissions,
    leave_one_out,
)
from veritas_kernel.errors import NotFoundError, ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.participation.service import ParticipationService


def _belief_with(service: ParticipationService, submissions):
    """Create agents and a belief; the first (agent, belief, meta) opens it."""
    for agent_id, _, _ in submissions:
        service.create_agent(agent_id=agent_id)
    first_agent, first_belief, first_meta = submissions[0]
    belief = service.create_belief(first_agent, first_belief, first_meta)
    for agent_id, value, meta in submissions[1:]:
        service.submit_belief(agent_id, belief.id, value, meta)
    return belief.id


class TestAggregationEngine:
    def setup_method(self):
        self.store = ProtocolStore(db_path=":memory:")
        self.service = ParticipationService(self.store)
        self.engine = AggregationEngine(self.store)

    def test_weighted_aggregate_example(self):
        belief_id = _belief_with(self.service, [("a", 0.2, 0.3), ("b", 0.8, 0.6)])
        result = self.engine.aggregate(belief_id, {"a": 0.25, "b": 0.75}, epoch=0)
        assert result.aggregate == pytest.approx(0.65, abs=1e-12)

    def test_single_participant(self):
        belief_id = _belief_with(self.service, [("a", 0.7, 0.5)])
        result = self.engine.aggregate(belief_id, {"a": 1.0}, epoch=0)
        assert result.aggregate == 0.7
        assert result.jensen_shannon_disagreement_entropy == 0.0
        assert result.certainty == 1.0

    def test_identical_beliefs(self):
        belief_id = _belief_with(self.service, [("a", 0.6, 0.5), ("b", 0.6, 0.5)])
        result = self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.5}, epoch=0)
        assert result.aggregate == pytest.approx(0.6)
        assert result.normalized_disagreement_entropy == pytest.approx(0.0, abs=1e-12)
        assert result.certainty == pytest.approx(1.0)

    def test_disagreement_positive_for_split(self):
        belief_id = _belief_with(self.service, [("a", 0.1, 0.5), ("b", 0.9, 0.5)])
        result = self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.5}, epoch=0)
        assert result.jensen_shannon_disagreement_entropy > 0.4
        assert result.certainty < 0.6

    def test_leave_one_out_two_agents(self):
        belief_id = _belief_with(self.service, [("a", 0.2, 0.3), ("b", 0.8, 0.6)])
        result = self.engine.aggregate(belief_id, {"a": 0.25, "b": 0.75}, epoch=0)
        assert result.leave_one_out_aggregates == pytest.approx({"a": 0.8, "b": 0.2})
        assert result.leave_one_out_meta_aggregates == pytest.approx({"a": 0.6, "b": 0.3})
        assert result.agent_meta_predictions == {"a": 0.3, "b": 0.6}

    def test_uses_latest_submission(self):
        belief_id = _belief_with(self.service, [("a", 0.2, 0.3), ("b", 0.8, 0.6)])
        self.service.submit_belief("a", belief_id, 0.4, 0.5)
        result = self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.5}, epoch=0)
        assert result.agent_beliefs == {"a": 0.4, "b": 0.8}
        assert result.aggregate == pytest.approx(0.6)

    def test_active_agent_indicators(self):
        belief_id = _belief_with(self.service, [("a", 0.2, 0.3), ("b", 0.8, 0.6)])
        result = self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.5}, epoch=0)
        assert sorted(result.active_agent_indicators) == ["a", "b"]

        # Different epoch: nobody active
        result = self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.5}, epoch=1)
        assert result.active_agent_indicators == []

        self.store.deactivate_submissions(belief_id)
        result = self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.5}, epoch=0)
        assert result.active_agent_indicators == []

    def test_unnormalized_weights_rejected(self):
        belief_id = _belief_with(self.service, [("a", 0.2, 0.3), ("b", 0.8, 0.6)])
        with pytest.raises(ValidationError):
            self.engine.aggregate(belief_id, {"a": 0.5, "b": 0.6}, epoch=0)

    def test_missing_weight_rejected(self):
        belief_id = _belief_with(self.service, [("a", 0.2, 0.3), ("b", 0.8, 0.6)])
        with pytest.raises(ValidationError):
            self.engine.aggregate(belief_id, {"a": 1.0}, epoch=0)

    def test_unknown_belief(self):
        with pytest.raises(NotFoundError):
            self.engine.aggregate("belief_missing", {"a": 1.0}, epoch=0)


class TestPureAggregation:
    def test_extreme_beliefs_are_clamped(self):
        computed = aggregate_submissions({"a": 1.0, "b": 1.0}, {"a": 1.0, "b": 1.0}, {"a": 0.5, "b": 0.5})
        assert 0.0 < computed["aggregate"] < 1.0

    def test_no_submissions(self):
        with pytest.raises(ValidationError):
            aggregate_submissions({}, {}, {"a": 1.0})

    def test_leave_one_out_lone_agent_keeps_own_value(self):
        assert leave_one_out({"a": 0.3}, {"a": 1.0}) == {"a": 0.3}

    def test_leave_one_out_renormalizes(self):
        loo = leave_one_out({"a": 0.2, "b": 0.4, "c": 0.9}, {"a": 0.5, "b": 0.25, "c": 0.25})
        assert loo["c"] == pytest.approx((0.5 * 0.2 + 0.25 * 0.4) / 0.75)
        assert loo["a"] == pytest.approx(0.65)
