"""
Aggregation Engine: naive stake-weighted belief aggregation.

aggregate = clamp(sum_i w_i * clamp(b_i)), with Jensen-Shannon disagreement,
certainty and the leave-one-out aggregates the BTS scorer needs.
"""

import logging
from typing import Dict, Optional

from veritas_kernel.errors import ValidationError
from veritas_kernel.ledger.store import ProtocolStore
from veritas_kernel.models.config import ProtocolConfig
from veritas_kernel.models.stages import AggregationResult
from veritas_kernel.numerics.probability import (
    EPSILON_PROBABILITY,
    clamp_probability,
    disagreement,
    validate_weights,
)

logger = logging.getLogger(__name__)


def weighted_aggregate(
    beliefs: Dict[str, float],
    weights: Dict[str, float],
    eps: float = EPSILON_PROBABILITY,
) -> float:
    """Clamped weighted sum of clamped beliefs."""
    total = sum(weights[agent_id] * clamp_probability(b, eps) for agent_id, b in beliefs.items())
    return clamp_probability(total, eps)


def leave_one_out(
    values: Dict[str, float],
    weights: Dict[str, float],
    eps: float = EPSILON_PROBABILITY,
) -> Dict[str, float]:
    """
    For every agent, the weighted mean of everyone else's value with the
    remaining weights renormalized. An agent with nobody left keeps its own
    clamped value.
    """
    result = {}
    for target in values:
        remaining = 0.0
        acc = 0.0
        for agent_id, value in values.items():
            if agent_id == target:
                continue
            remaining += weights[agent_id]
            acc += weights[agent_id] * clamp_probability(value, eps)
        if remaining > eps:
            result[target] = clamp_probability(acc / remaining, eps)
        else:
            result[target] = clamp_probability(values[target], eps)
    return result


def aggregate_submissions(
    beliefs: Dict[str, float],
    meta_predictions: Dict[str, float],
    weights: Dict[str, float],
    eps: float = EPSILON_PROBABILITY,
) -> dict:
    """
    Pure aggregation over already-loaded beliefs.

    Every agent in `beliefs` must carry a weight. Returns the aggregate,
    disagreement metrics and leave-one-out aggregates as a plain dict.
    """
    if not beliefs:
        raise ValidationError("No submissions available for aggregation")
    missing = [agent_id for agent_id in beliefs if agent_id not in weights]
    if missing:
        raise ValidationError(
            "Missing weight for participant agent",
            {"agent_ids": missing},
        )

    aggregate = weighted_aggregate(beliefs, weights, eps)
    jensen_shannon, normalized, certainty = disagreement(beliefs, weights, aggregate, eps)
    return {
        "aggregate": aggregate,
        "jensen_shannon_disagreement_entropy": jensen_shannon,
        "normalized_disagreement_entropy": normalized,
        "certainty": certainty,
        "leave_one_out_aggregates": leave_one_out(beliefs, weights, eps),
        "leave_one_out_meta_aggregates": leave_one_out(meta_predictions, weights, eps),
    }


class AggregationEngine:
    """Aggregates the current submissions for a belief."""

    def __init__(self, store: ProtocolStore, config: Optional[ProtocolConfig] = None):
        self.store = store
        self.config = config or ProtocolConfig()

    def aggregate(self, belief_id: str, weights: Dict[str, float], epoch: int) -> AggregationResult:
        eps = self.config.epsilon_probability
        validate_weights(weights, eps)
        self.store.require_belief(belief_id)

        submissions = self.store.current_submissions(belief_id)
        beliefs = {agent_id: s.belief_value for agent_id, s in submissions.items()}
        metas = {agent_id: s.meta_prediction for agent_id, s in submissions.items()}

        computed = aggregate_submissions(beliefs, metas, weights, eps)
        active = [
            agent_id for agent_id, s in submissions.items()
            if s.epoch == epoch and s.is_active
        ]

        logger.info(
            "Belief %s epoch %d: naive aggregate %.6f over %d agents (certainty %.4f)",
            belief_id, epoch, computed["aggregate"], len(beliefs), computed["certainty"],
        )
        return AggregationResult(
            belief_id=belief_id,
            epoch=epoch,
            agent_meta_predictions=metas,
            agent_beliefs=beliefs,
            active_agent_indicators=active,
            **computed,
        )
