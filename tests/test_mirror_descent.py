"""Tests for the Mirror Descent Updater."""

from datetime import datetime

import pytest

from veritas_kernel.aggregation.engine import weighted_aggregate
from veritas_kernel.errors import NotFoundError, ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.mirror_descent.updater import MirrorDescentUpdater
from veritas_kernel.models.belief import Belief
from veritas_kernel.participation.service import ParticipationService

WEIGHTS = {"a": 0.5, "b": 0.25, "c": 0.25}


class TestMirrorDescent:
    def setup_method(self):
        self.store = ProtocolStore(db_path=":memory:")
        self.service = ParticipationService(self.store)
        self.updater = MirrorDescentUpdater(self.store)
        for agent_id in ("a", "b", "c"):
            self.service.create_agent(agent_id=agent_id)
        belief = self.service.create_belief("a", 0.2, 0.4)
        self.belief_id = belief.id
        self.service.submit_belief("b", self.belief_id, 0.8, 0.5)
        self.service.submit_belief("c", self.belief_id, 0.5, 0.5)

    def _stored_beliefs(self):
        return {
            agent_id: s.belief_value
            for agent_id, s in self.store.current_submissions(self.belief_id).items()
        }

    def test_zero_certainty_moves_nothing(self):
        result = self.updater.mirror_descent(self.belief_id, 0.45, 0.0, ["a"], WEIGHTS)
        assert result.updated_beliefs == {"a": 0.2, "b": 0.8, "c": 0.5}
        assert self._stored_beliefs() == {"a": 0.2, "b": 0.8, "c": 0.5}

    def test_full_certainty_collapses_passive_onto_aggregate(self):
        result = self.updater.mirror_descent(self.belief_id, 0.45, 1.0, ["a"], WEIGHTS)
        assert result.updated_beliefs["b"] == 0.45
        assert result.updated_beliefs["c"] == 0.45
        assert result.updated_beliefs["a"] == 0.2
        assert self._stored_beliefs() == {"a": 0.2, "b": 0.45, "c": 0.45}

    def test_active_beliefs_invariant(self):
        for certainty in (0.0, 0.3, 0.7, 1.0):
            result = self.updater.mirror_descent(
                self.belief_id, 0.45, certainty, ["a", "c"], WEIGHTS
            )
            assert result.updated_beliefs["a"] == 0.2
            assert result.updated_beliefs["c"] == 0.5

    def test_partial_step(self):
        result = self.updater.mirror_descent(self.belief_id, 0.4, 0.5, ["a"], WEIGHTS)
        assert result.updated_beliefs["b"] == pytest.approx(0.6)
        assert result.updated_beliefs["c"] == pytest.approx(0.45)

    def test_post_metrics_recomputed(self):
        result = self.updater.mirror_descent(self.belief_id, 0.45, 1.0, ["a"], WEIGHTS)
        expected = weighted_aggregate(result.updated_beliefs, WEIGHTS)
        assert result.post_aggregate == pytest.approx(expected)
        assert 0.0 <= result.post_disagreement_entropy <= 1.0

    def test_convergence_reduces_disagreement(self):
        before = self.updater.mirror_descent(self.belief_id, 0.45, 0.0, [], WEIGHTS)
        after = self.updater.mirror_descent(self.belief_id, 0.45, 0.9, [], WEIGHTS)
        assert after.post_disagreement_entropy < before.post_disagreement_entropy

    def test_invalid_certainty(self):
        with pytest.raises(ValidationError):
            self.updater.mirror_descent(self.belief_id, 0.45, 1.5, [], WEIGHTS)

    def test_invalid_aggregate(self):
        with pytest.raises(ValidationError):
            self.updater.mirror_descent(self.belief_id, -0.1, 0.5, [], WEIGHTS)

    def test_unnormalized_weights(self):
        with pytest.raises(ValidationError):
            self.updater.mirror_descent(self.belief_id, 0.45, 0.5, [], {"a": 0.5, "b": 0.5, "c": 0.5})

    def test_belief_without_submissions(self):
        now = datetime.utcnow()
        self.store.insert_belief(Belief(
            id="belief_empty",
            creator_agent_id="a",
            created_epoch=0,
            expiration_epoch=5,
            created_at=now,
        ))
        with pytest.raises(NotFoundError):
            self.updater.mirror_descent("belief_empty", 0.5, 0.5, [], {"a": 1.0})

    def test_unknown_belief(self):
        with pytest.raises(NotFoundError):
            self.updater.mirror_descent("belief_missing", 0.5, 0.5, [], {"a": 1.0})
