"""Tests for the BTS Scorer."""

import pytest

from veritas_kernel.errors import ValidationError
from veritas_kernel.numerics.probability import binary_kl_divergence
from veritas_kernel.scoring.bts import BTSScorer


def _inputs(**overrides):
    inputs = {
        "belief_id": "belief_1",
        "post_beliefs": {"truthful": 0.9, "contrarian": 0.1, "neutral": 0.5},
        "leave_one_out_aggregates": {"truthful": 0.9, "contrarian": 0.9, "neutral": 0.5},
        "leave_one_out_meta_aggregates": {"truthful": 0.5, "contrarian": 0.5, "neutral": 0.5},
        "weights": {"truthful": 0.4, "contrarian": 0.3, "neutral": 0.3},
        "meta_predictions": {"truthful": 0.9, "contrarian": 0.1, "neutral": 0.5},
    }
    inputs.update(overrides)
    return inputs


class TestBTSScorer:
    def setup_method(self):
        self.scorer = BTSScorer()

    def test_score_formula(self):
        result = self.scorer.bts_score(**_inputs())
        expected = (
            binary_kl_divergence(0.9, 0.5)
            - binary_kl_divergence(0.9, 0.9)
            - binary_kl_divergence(0.9, 0.9)
        )
        assert result.bts_scores["truthful"] == pytest.approx(expected)
        assert result.information_scores["truthful"] == pytest.approx(expected)

    def test_scores_clamped(self):
        result = self.scorer.bts_score(**_inputs())
        assert result.bts_scores["contrarian"] < -1.0
        assert result.information_scores["contrarian"] == -1.0
        for score in result.information_scores.values():
            assert -1.0 <= score <= 1.0

    def test_weights_do_not_scale_scores(self):
        heavy = self.scorer.bts_score(**_inputs())
        light = self.scorer.bts_score(**_inputs(
            weights={"truthful": 0.01, "contrarian": 0.98, "neutral": 0.01}
        ))
        assert light.information_scores == pytest.approx(heavy.information_scores)

    def test_partition(self):
        result = self.scorer.bts_score(**_inputs())
        assert result.winners == ["truthful"]
        assert result.losers == ["contrarian"]
        # Zero score lands in neither list
        assert result.information_scores["neutral"] == pytest.approx(0.0, abs=1e-12)
        assert "neutral" not in result.winners + result.losers

    def test_missing_leave_one_out(self):
        inputs = _inputs(leave_one_out_aggregates={"truthful": 0.9, "contrarian": 0.9})
        with pytest.raises(ValidationError):
            self.scorer.bts_score(**inputs)

    def test_missing_meta_prediction(self):
        inputs = _inputs(meta_predictions={"truthful": 0.9})
        with pytest.raises(ValidationError):
            self.scorer.bts_score(**inputs)

    def test_missing_weight(self):
        inputs = _inputs(weights={"truthful": 1.0})
        with pytest.raises(ValidationError):
            self.scorer.bts_score(**inputs)

    def test_empty_beliefs(self):
        with pytest.raises(ValidationError):
            self.scorer.bts_score(**_inputs(post_beliefs={}))

    def test_out_of_range_belief(self):
        inputs = _inputs(post_beliefs={"truthful": 1.4, "contrarian": 0.1, "neutral": 0.5})
        with pytest.raises(ValidationError):
            self.scorer.bts_score(**inputs)
